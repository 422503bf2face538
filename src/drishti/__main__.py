"""Drishti CLI bootstrap."""

from __future__ import annotations

from drishti.cli import app

if __name__ == "__main__":
    app()
