# -*- coding: utf-8 -*-
"""Console script entry point for GateBot."""

import sys
from pathlib import Path


def bot() -> None:
    """Run the GateBot Discord bot."""
    # GatePy/ must be on sys.path so internal imports (models, utils, modules) resolve.
    gatepy_dir = str(Path(__file__).resolve().parent / "GatePy")
    if gatepy_dir not in sys.path:
        sys.path.insert(0, gatepy_dir)

    from bot import app

    app()
