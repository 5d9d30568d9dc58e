import sys

from appblock.cli import main

sys.exit(main())
