"""Allow running the CLI with ``python -m agent_swarm``."""

from .cli import main

if __name__ == "__main__":
    main()
