"""Local assistant toolkit: task log, persona rules, memory, agents and follow-up."""

__version__ = "0.1.0"