"""Agent Swarm - lifecycle and coordination core for parallel coding agents.

Each worker runs as a detached process inside its own git worktree.
The package tracks workers in a session document, gates spawns on
resource limits, exchanges messages through a file-based bus and
recovers from common failures using a rule table plus learned patterns.
"""

__version__ = "0.3.0"
