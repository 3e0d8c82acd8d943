"""
Entry point for running vnqueue as a module.

Usage:
    python -m vnqueue watch VN260112-0001
    python -m vnqueue staff -u nurse1 -p secret queues
"""

from vnqueue.cli import main

if __name__ == "__main__":
    main()
