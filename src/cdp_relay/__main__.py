from cdp_relay.runner import main

main()
