"""
Entry point for running ticket_operator as a module.

Allows running as: python -m ticket_operator
"""

from ticket_operator.cli import cli_main

if __name__ == "__main__":
    cli_main()
