"""Run the upgrade manager from a source checkout."""

import sys

from upgrade_manager.__main__ import main

if __name__ == "__main__":
    sys.exit(main())
