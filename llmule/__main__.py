"""Allow ``python -m llmule``."""

from .cli import main

if __name__ == "__main__":
    main()
