"""Inference gateway.

Turns an OpenAI-style chat request into one metered completion:
  - Key Pool (random credential selection, demotion, cooldown)
  - Multimodal Preprocessor (audio transcripts, image context)
  - Context Compactor (oldest-first history trimming)
  - Backend Router and Retry/Failover Controller
  - Streaming Adapter and Response Sanitizer
  - Metering & Billing (balance gate, usage ledger)
"""
