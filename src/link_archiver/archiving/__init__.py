"""Content archival pipeline.

Captures the readable content of a saved link so it survives link rot.

Sub-modules:

- :mod:`~link_archiver.archiving.config` — fixed constants (block-list,
  redirect statuses, column limits).
- :mod:`~link_archiver.archiving.url_validator` — SSRF-safe URL validation.
- :mod:`~link_archiver.archiving.http_fetcher` — bounded, validated HTTP fetch.
- :mod:`~link_archiver.archiving.content_extractor` — metadata and
  main-content extraction.
- :mod:`~link_archiver.archiving.sanitizer` — prune-strategy HTML sanitizer.
- :mod:`~link_archiver.archiving.state_machine` — archive lifecycle and
  transition log.
- :mod:`~link_archiver.archiving.archiver` — stage orchestration.
- :mod:`~link_archiver.archiving.service` — create/read/retry/delete API.
- :mod:`~link_archiver.archiving.tasks` — Celery task wrapper.
"""
