"""urlrelay - a single-hop HTTP relay.

Fetches the URL named by the ``url`` query parameter, retrying within a
bounded budget, and relays the upstream response back to the caller.
"""

__version__ = "0.1.0"
