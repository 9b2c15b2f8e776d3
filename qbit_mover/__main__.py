import sys

from .qbit_mover import main

if __name__ == "__main__":
    sys.exit(main())
