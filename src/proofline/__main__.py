"""
Entry point for running Proofline as a module.

Usage:
    python -m proofline [command] [options]
"""

from proofline.cli import main

if __name__ == "__main__":
    main()
