"""
Lead control for voice lead capture.

Owns every decision of a capture session:
- the capture state machine (single transition function, injectable store)
- orchestration and cancellation across permission, recording,
  transcription and extraction
- human validation and correction of extracted entities
- committing validated leads to the contact store
"""
