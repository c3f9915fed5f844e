"""
Service for enqueuing export jobs via Dramatiq.

Messages carry only the ExportRequest id; everything else is read from
the record store when the job runs.
"""
import logging
import uuid

from app.workers.export_worker import process_export

logger = logging.getLogger(__name__)


class ExportQueueService:
    """Publishes export jobs to the durable queue."""

    def enqueue(self, request_id: uuid.UUID) -> str:
        """
        Enqueue a render job for an export request.

        Duplicate messages for the same request are harmless: only the
        delivery that claims the pending record does any work.

        Args:
            request_id: ExportRequest ID

        Returns:
            Dramatiq message id
        """
        message = process_export.send(str(request_id))
        logger.debug("Enqueued export job %s for ExportRequest %s", message.message_id, request_id)
        return message.message_id


# Singleton instance
export_queue = ExportQueueService()
