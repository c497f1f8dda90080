from batch_pusher.main import main

main()
