#!/usr/bin/env python3

"""Run the controller straight from a source checkout.

Puts `src/` on the import path so `./tm-controller.py` works against a local
kubeconfig without `pip install`. Deployed images use the `tm-controller`
console script instead.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from tm_controller.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
