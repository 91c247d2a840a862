"""Schemaflow — database change-management control plane.

Issues decompose into a pipeline of stages, each holding tasks that create
databases or apply schema migrations. A poll-based scheduler drives them.
"""

__version__ = "0.1.0"
