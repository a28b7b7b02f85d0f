import sys

from omnistore.cli import main

sys.exit(main())
