"""
LPG Subsidy NIK Batch Verification — Entry Point

Usage:
    python main.py run --input niks.txt [--limit N] [--output DIR]
    python main.py submit --input niks.txt --server http://host:3000 [--limit N]
    python -m lpg_batch.server            # HTTP job server
"""

import sys

from lpg_batch.cli import main

if __name__ == "__main__":
    sys.exit(main())
