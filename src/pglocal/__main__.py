from pglocal.cli import main

main()
