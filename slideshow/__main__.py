"""
Package entry point.

Allows running: python -m slideshow [options]
"""

from .cli import main

if __name__ == '__main__':
    exit(main())
