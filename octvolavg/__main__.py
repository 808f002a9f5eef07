import sys

from .averaging_pipeline import main

sys.exit(main())
