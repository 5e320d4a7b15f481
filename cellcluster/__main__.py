"""
Entry point for running as a module: python -m cellcluster
"""

from cellcluster.cli import app

if __name__ == "__main__":
    app()
