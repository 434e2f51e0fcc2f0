"""Package entry point for ``python -m localdesk_audio``."""

from localdesk_audio.cli import main

if __name__ == "__main__":
    main()
