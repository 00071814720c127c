"""Channel -> repository bridge.

The only consumer of the repository request channel. Every inbound request gets
exactly one reply, whatever fails on the way.
"""
