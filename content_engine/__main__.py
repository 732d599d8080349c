"""Main entry point for the content engine package."""

from content_engine.cli import main

if __name__ == "__main__":
    main()
