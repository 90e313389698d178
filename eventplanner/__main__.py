import sys

from eventplanner.cli import main

sys.exit(main())
