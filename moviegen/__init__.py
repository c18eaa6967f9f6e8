"""
moviegen: premise-to-movie generation worker.

See moviegen.main for the FastAPI app and moviegen.pipeline for the job
state machine.
"""

__version__ = "0.1.0"
