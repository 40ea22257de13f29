"""Conversation orchestration: cancellation, context, dispatch, state and the loop.

Submodules are imported directly (``inkwell.ai.orchestration.loop`` and so on)
because the transport layer depends on :mod:`.cancellation`.
"""
