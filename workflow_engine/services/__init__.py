"""
Engine services

External collaborators (data store, variable store, AI provider, effects,
identity) and the execution service facade.
"""
