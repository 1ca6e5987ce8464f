"""Event-sourced patient journey engine for emergency-department flow boards.

The journey log is the single source of truth; room, phase, observation
history and monitoring cadence are all folded from it.
"""
