"""
ExamEcho core package.

Modules
───────
models      Pydantic data models and response schemas (Quiz, EvaluationResult, HistoryEntry, …)
errors      error taxonomy (IngestionError, RateLimitedError, MalformedResponseError, …)
inference   InferenceClient: rate-limit retry, payload shaping, schema-validated replies
examiner    stage requests: study notes, topic detection, quiz synthesis, grading
history     bounded, most-recent-first ledger of graded sessions (SQLite slot or memory)
session     SessionController: the practice-session state machine
"""
