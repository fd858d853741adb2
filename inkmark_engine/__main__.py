"""Entry point for running inkmark_engine as a module.

Usage:
    python -m inkmark_engine <command> [options]
"""
from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
