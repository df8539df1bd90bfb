"""Rolling text tail with high/low watermark trimming."""

from __future__ import annotations

HIGH_WATERMARK = 200_000
LOW_WATERMARK = 160_000


class RollingTail:
    """Keeps the most recent characters of a stream.

    Appends are cheap; when the stored length exceeds ``high`` the tail is
    cut back to the newest ``low`` characters in one step, so trimming
    happens once per overflow rather than on every append.
    """

    def __init__(self, high: int = HIGH_WATERMARK, low: int = LOW_WATERMARK) -> None:
        if low > high:
            raise ValueError("low watermark must not exceed high watermark")
        self.high = high
        self.low = low
        self._parts: list[str] = []
        self._length = 0

    def append(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        self._length += len(text)
        if self._length > self.high:
            joined = "".join(self._parts)[-self.low :]
            self._parts = [joined]
            self._length = len(joined)

    def delete_last_char(self) -> bool:
        """Remove the last character unless it ends a line.

        Returns True if a character was removed.
        """
        while self._parts and not self._parts[-1]:
            self._parts.pop()
        if not self._parts:
            return False
        last = self._parts[-1]
        if last.endswith("\n"):
            return False
        self._parts[-1] = last[:-1]
        self._length -= 1
        return True

    def text(self) -> str:
        if len(self._parts) > 1:
            self._parts = ["".join(self._parts)]
        return self._parts[0] if self._parts else ""

    def clear(self) -> None:
        self._parts = []
        self._length = 0

    def __len__(self) -> int:
        return self._length
