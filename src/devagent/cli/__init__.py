"""
devagent CLI - interactive terminal chat with the developer agent.
"""

from devagent.cli.repl import ChatREPL

__all__ = ["ChatREPL"]
