"""
Entry point for running PlanVault as a module.

Usage:
    python -m planvault [command] [options]
"""

from planvault.cli import main

if __name__ == "__main__":
    main()
