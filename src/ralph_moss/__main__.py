"""Allow ``python -m ralph_moss``."""

from ralph_moss.cli import main

main()
