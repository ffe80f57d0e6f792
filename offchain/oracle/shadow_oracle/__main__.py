"""
Entry point for running the oracle as a module.

Usage:
    python -m shadow_oracle
"""

from shadow_oracle.cli import main

if __name__ == "__main__":
    main()
