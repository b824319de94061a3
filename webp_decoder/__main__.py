import sys

from webp_decoder.cli import main

sys.exit(main())
