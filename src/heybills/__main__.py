from heybills.cli import main

main()
