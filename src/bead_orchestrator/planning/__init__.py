"""Bead planning: dependency graph, estimation cache and batch planner."""
