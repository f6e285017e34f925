"""Adapters: external integrations for the compliance pipeline.

Contains:
- github_client.py : GitHub REST client (App auth, pagination, rate limits)
- github_models.py : typed views of GitHub resources
- token_cache.py   : process-wide installation token cache
- repositories.py  : SQLAlchemy repositories for the primary DB
- job_queue.py     : asyncio job queue and daily scheduler
- kafka.py         : ComplianceEventPublisher
"""

__all__: list[str] = []
