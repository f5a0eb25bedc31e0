import sys

from vos_cert.cli import main

sys.exit(main())
