"""Persistence for council negotiations.

SQLite storage for negotiation rounds and decisions, the human escalation
queue, and the negotiation examples that guide reconsideration prompts.
"""
