from payproxy.lifecycle import main

main()
