"""Inference router package.

Routes text-generation requests between a response cache, free local
models, batched remote calls and single remote calls while keeping remote
spend under a daily ceiling.
"""

__all__: list[str] = []
