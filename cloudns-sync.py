#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/cloudns_sync`. This wrapper allows running
`./cloudns-sync.py <username> <password-parameter> [ttl [stackName...]]` from a
fresh checkout.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from cloudns_sync.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
