from aicut.runner import main

main()
