import sys

from overlay_separator.main import main

sys.exit(main())
