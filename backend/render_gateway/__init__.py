"""
Render gateway: Execution Plans in, FFmpeg renders out.

Packages:
    plans      Execution Plan model, structural validation, simple transforms
    routing    Capability detection and first-fit engine routing
    execution  Plan compiler, FFmpeg detection and invocation, asset resolution
    jobs       Job model, state machine, FIFO queue and the render worker
    failures   Error catalog, classification, recovery decisions, error records
    storage    Upload persistence
"""

__version__ = "0.1.0"
