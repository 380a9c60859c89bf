"""Task orchestration: capability probing, dependency batching, runner selection
and process execution with retries and fallback chains.

A run depends only on the registry, a capabilities snapshot taken once at
start, and the caller's preferences. Components receive their collaborators
explicitly; concurrent tasks share only read-only data.
"""
