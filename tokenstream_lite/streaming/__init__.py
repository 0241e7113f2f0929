"""
Streaming output filters.

Provides:
- StopSequenceBuffer: Releases generated text without leaking stop markers
- scan: Pure single-step form of the same decision
"""

from tokenstream_lite.streaming.stop_buffer import ScanResult, StopSequenceBuffer, leading_character, scan

__all__ = ["ScanResult", "StopSequenceBuffer", "leading_character", "scan"]
