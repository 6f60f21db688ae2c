"""Facet - multi-agent coordination and orchestration engine.

Facet dispatches a user turn to one or more specialist agents, isolates
failing agents behind circuit breakers, routes and load balances across
agents, synthesizes their output and monitors their performance.

Key modules:

- :mod:`facet.agents` - Agent interface, base agent and registry
- :mod:`facet.coordination` - Bus, circuit breakers, strategies and workflow graph
- :mod:`facet.orchestration` - Orchestration engine, router and performance monitor
- :mod:`facet.config` - YAML configuration models and loader
- :mod:`facet.system` - Wiring of a complete system via ``create_system``
"""

__version__ = "0.1.0"
