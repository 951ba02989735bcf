"""Module entrypoint to run `python -m sbviewer`."""

from __future__ import annotations

from .app import main

if __name__ == "__main__":
    main()
