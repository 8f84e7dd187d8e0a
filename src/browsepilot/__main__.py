import sys

from browsepilot.cli import main

sys.exit(main())
