import sys

from nodeboot.cli import main

sys.exit(main())
