from agent_timeline.cli import main

main()
