#!/usr/bin/env python3
"""
Entry point for running llmstash as a module.

Usage:
    python -m llmstash <command> [options]
"""

from .store.cli import main

if __name__ == "__main__":
    main()
