from linacsim.main import main

main()
