"""Read-only queries for the dashboard"""

from typing import Any, Dict, List

from distributor.database import DatabaseService
from distributor.models.destination_upload import DestinationUpload
from distributor.models.received_file import ReceivedFile
from distributor.services.destination_manager import DestinationManager, compute_retry_eligible


class StatusService:
    """Status query surface over the record store and the orchestrator"""

    def __init__(self, database: DatabaseService, manager: DestinationManager):
        self.database = database
        self.manager = manager

    def get_active_uploads(self) -> Dict[str, List[Dict[str, Any]]]:
        return self.manager.get_active_uploads()

    def get_combined_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Most recent receipts, newest first, each with its upload attempts

        Each entry carries ``retryEligible``: destinations that failed and
        never succeeded for that file.
        """
        received = self.database.recent_received(limit)
        uploads = self.database.uploads_for_many([entry.id for entry in received])

        history = []
        for entry in received:
            attempts = uploads.get(entry.id, [])
            item = entry.to_legacy_dict()
            item.pop("type", None)
            item["destinations"] = [attempt.to_legacy_dict() for attempt in attempts]
            item["retryEligible"] = compute_retry_eligible(attempts)
            history.append(item)
        return history

    def get_upload_stats(self) -> Dict[str, int]:
        return {
            "totalReceived": self.database.count(ReceivedFile),
            "totalUploads": self.database.count(DestinationUpload),
            "succeeded": self.database.count(DestinationUpload, DestinationUpload.success == True),  # noqa: E712
            "failed": self.database.count(DestinationUpload, DestinationUpload.success == False),  # noqa: E712
        }

    async def get_destinations(self) -> List[Dict[str, Any]]:
        return await self.manager.describe()
