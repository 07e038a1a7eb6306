import sys

from .runner import run_with_auto_restart

sys.exit(run_with_auto_restart(sys.argv[1:]))
