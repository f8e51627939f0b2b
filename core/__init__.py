"""
Core module for the privacy enforcement engine.

This package holds the engine state and logic: tracker classification,
per-tab observation, block-rule synthesis, and the Control Plane that
owns all mutable state and answers the message surface.

Submodules:
    config: Engine settings (``EngineSettings``) and privacy profiles via Pydantic.
    models: Knowledge-base records, observation records, rules, countermeasure config.
    knowledge_base: Tracker database loading from a file or URL.
    classifier: ``TrackerClassifier`` category and threat assessment.
    observation: ``TabObservationStore`` per-tab hosts, attempts and badge.
    rules: ``RuleSynthesizer`` reset-and-rebuild block-rule synchronization.
    control_plane: ``ControlPlane`` coordinator and message dispatch.
    storage: ``SettingsStore`` persisted flat key-value settings.
    logging_setup: Compressed rotating file + safe console logging.
    utils: Hostname helpers and corruption-safe JSON read/write.
"""
