"""Allow ``python -m devrun``."""

from .cli import main

main()
