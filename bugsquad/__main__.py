from bugsquad.cli import main

main()
