from __future__ import annotations

from featurecrew.cli import main


if __name__ == "__main__":
    main()
