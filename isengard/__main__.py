from isengard.updater import main

main()
