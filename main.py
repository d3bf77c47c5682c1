# main.py
import sys

from sensor_spool.cli import main

if __name__ == "__main__":
    sys.exit(main())
