"""
Entry point for running the settlement core as a module.

Usage:
    python -m hellomix_settlement
"""

from hellomix_settlement.cli import main

if __name__ == "__main__":
    main()
