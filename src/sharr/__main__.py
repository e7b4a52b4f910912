"""
Entry point for running SHARR as a module.

Allows running SHARR with:
    python -m sharr run --finding-json findings.json
"""

import sys

from sharr.cli import main

if __name__ == "__main__":
    sys.exit(main())
