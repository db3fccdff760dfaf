"""arq worker settings module.

Import path for arq CLI: arq bonus_ledger.workers.settings.WorkerSettings
"""

from __future__ import annotations

from bonus_ledger.bonuses.worker import BonusWorkerSettings as WorkerSettings

__all__ = ["WorkerSettings"]
