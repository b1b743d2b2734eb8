"""Allow running as ``python -m wardshell``."""

from . import main

main()
