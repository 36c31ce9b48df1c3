from sysstats.server import main

main()
