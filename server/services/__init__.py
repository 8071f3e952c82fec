"""
Server Services
===============

Process-wide service singletons used by the routers.
"""
