"""Pipeline orchestrator module.

Provides job coordination for the convolution pipeline with:
- Job state machine transitions and constants
- Sequential ingest / engine / transcode stages with failure tracking
- Transcode cache reuse and bounded tool concurrency
"""

__all__ = []
