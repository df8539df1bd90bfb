from termhub.cli import main

main()
