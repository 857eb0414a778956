"""Allow running as ``python -m upstreamwatch``."""

from . import main

main()
