"""Allow ``python -m keyvend``."""

from keyvend.cli.main import main

main()
