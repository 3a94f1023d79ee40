"""Allow ``python -m trackgate``."""

from __future__ import annotations

from trackgate.cli.main import main

if __name__ == "__main__":
    main()
