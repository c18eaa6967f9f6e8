"""
Movie generation pipeline.

Modules:
  - models:         Job/scene/character models and the status machine
  - continuity:     Continuity Context Manager
  - prompt_builder: Scene Prompt Builder
  - script:         Script generation and parsing
  - characters:     Reference images, identity training, locking
  - audio:          Dialogue voice, lip-sync, soundtrack
  - assembly:       Assembly Resolver
  - orchestrator:   Pipeline Orchestrator (the job state machine)
  - store:          Supabase / in-memory persistence
  - storage:        R2 uploads
  - runner:         start / cancel / progress, queue consumers
  - routes:         FastAPI router
"""
