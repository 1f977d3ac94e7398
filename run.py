#!/usr/bin/env python3
"""
Entry point for the TradeKeeper engine.
Wraps tradekeeper/cli.py to ensure correct import resolution.
"""
import sys
import os

# Ensure project root is in python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from tradekeeper.config.dotenv_loader import load_dotenv_files

# Explicit dotenv loading for local/dev. In prod this is a no-op.
load_dotenv_files()

from tradekeeper.cli import app

if __name__ == "__main__":
    app()
