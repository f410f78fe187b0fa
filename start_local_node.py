"""Bootstrap shim for local execution.

Run from the DatenLord source root:

    python start_local_node.py
    python start_local_node.py "-F abi-7-23"

Reconciles the local mount directory, builds with `cargo build` and the given
options, then starts the node.
"""

import sys

from nodeboot.cli import main


sys.exit(main())
