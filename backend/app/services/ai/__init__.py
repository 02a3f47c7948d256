"""
Reasoning core services.

Knowledge retrieval, prompt composition, provider routing, the reasoning
orchestrator and progressive enforcement. ReasoningCore in
``app.services.ai.container`` wires them together.
"""
