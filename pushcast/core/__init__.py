# pushcast/core/__init__.py
"""
Dispatch core: policy types, the handler registry, resolvers and the
orchestrating ``DispatchResolver``. Framework-agnostic; the request only
needs a ``headers`` mapping.
"""
