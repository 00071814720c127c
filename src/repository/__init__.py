"""HTTP repository connector.

Forwards one client request as a GET to the configured repository host and
normalizes the answer. Every transport outcome resolves to a ClientResponse.
"""
