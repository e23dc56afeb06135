"""
readscope - Coverage tracking for autonomous coding agents.

Shows which symbols of a codebase an agent has examined during a session,
at what depth, and which of those reads went stale after edits.

Usage:
    readscope dump <project>       # Print the symbol forest
    readscope report <project>     # Coverage table for a session
    readscope sessions <project>   # List recorded sessions
    readscope watch <project>      # Live coverage while the agent works
"""

__version__ = "0.1.0"
