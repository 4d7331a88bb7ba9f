#!/usr/bin/env python3
"""
Gene-environment association scan (LFMM, GF, RDA, pRDA) with consensus
"""
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from geascan.cli.utils import main

if __name__ == "__main__":
    main()
