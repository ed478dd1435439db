"""
CohortLens — Group Relationship Analytics.

Architecture:
    cohortlens/
    ├── schemas/         # Pydantic models (member profiles, analysis results, jobs)
    ├── engines/         # Pure scoring engines (compatibility, strengths, risks, goals)
    ├── services/        # Orchestrator, synthesis, queue, cache, crypto, notifications
    ├── db/              # SQLAlchemy models and engine
    └── worker_main.py   # Background job worker entry point

Module Boundaries:
    - Engines never perform I/O; they take validated profiles and return models
    - The orchestrator owns member profiles for the duration of one analysis
    - Only the job queue processor mutates analysis jobs
    - Absent profile data is "no data", never zero

Data Flow:
    Queue → Orchestrator → Engines → Synthesizer → Insight Store / Cache → Notification

Version: 1.0.0
"""

__version__ = "1.0.0"
