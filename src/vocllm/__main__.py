from vocllm.cli import main

main()
