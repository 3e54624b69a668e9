"""Entry point for running snapsync via python -m snapsync"""

from .cli import main

if __name__ == "__main__":
    main()
