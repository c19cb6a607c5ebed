"""Invoked as: python -m htzbuild"""

from htzbuild.cli import main

main()
