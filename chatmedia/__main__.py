import sys

from chatmedia.cli import main

sys.exit(main())
