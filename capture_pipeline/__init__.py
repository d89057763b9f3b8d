"""
Capture pipeline for voice lead capture.

Realtime I/O only: microphone permission and acquisition, capture session,
streaming transcription and entity extraction.
No policy decisions live here (lead control owns those):
- the pipeline never decides to abort or continue after a failure
- failures are raised as typed CaptureError subclasses
- all behavior is observable via structured logs and events
"""
