from cratetrace.cli import main

main()
