import sys

from eksforge.cli import main

sys.exit(main())
