import sys

from rollet.cli import main

sys.exit(main())
