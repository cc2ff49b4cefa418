#!/usr/bin/env python3
"""
Thin wrapper so the container / CI can simply call `python -m wrapper`
instead of `python scanner.py`
"""
from scanner import main
if __name__ == "__main__":
    raise SystemExit(main())
