"""Configuration for the ExamEcho core (see ``config.settings``)."""
