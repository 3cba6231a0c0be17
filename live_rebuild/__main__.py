"""Allow ``python -m live_rebuild``."""

from live_rebuild.main import main

if __name__ == "__main__":
    main()
