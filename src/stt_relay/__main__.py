import sys

from stt_relay.cli import main

sys.exit(main())
