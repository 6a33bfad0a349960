import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

from pagetrail.models import ExecutionRequest, ExtractedItem, utc_now
from pagetrail.storage import ItemSink

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5


class BatchItemSaver:
    """
    Persists one page's extracted items to a sink table.

    Items are split into fixed-size batches. Saves inside a batch run
    concurrently; the next batch starts only once every save of the
    current one has settled. A failed save is logged and left out of the
    returned id list; it never aborts the batch or the page.
    """

    def __init__(self, sink: ItemSink, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self._sink       = sink
        self._batch_size = max(1, batch_size)

    def save_page(
        self,
        items: list[ExtractedItem],
        request: ExecutionRequest,
        page_url: str,
        response_status: int,
    ) -> list[str]:
        """Save items to request.table_name and return the ids actually written."""
        if not request.persist_items or not items:
            return []

        timestamp = utc_now()
        context   = {
            "method":       request.method,
            "url":          page_url,
            "query_params": dict(request.query_params),
            "headers":      dict(request.headers),
            "body":         request.body,
        }
        batches = [items[i:i + self._batch_size] for i in range(0, len(items), self._batch_size)]
        saved: list[str] = []

        log.debug("Saving %d items to %s in %d batch(es)",
                  len(items), request.table_name, len(batches))

        with ThreadPoolExecutor(max_workers=self._batch_size, thread_name_prefix="pagetrail-save") as executor:
            for batch_index, batch in enumerate(batches):
                future_to_index = {}
                for offset, item in enumerate(batch):
                    index  = batch_index * self._batch_size + offset
                    record = _build_record(item, index, len(items), timestamp, context, response_status)
                    future = executor.submit(self._sink.put, request.table_name, record)
                    future_to_index[future] = (index, record["id"])

                batch_saved: list[tuple[int, str]] = []
                for future in as_completed(future_to_index):
                    index, item_id = future_to_index[future]
                    try:
                        future.result()
                        batch_saved.append((index, item_id))
                    except Exception as exc:
                        log.error("Failed to save item %d/%d (%s) to %s: %s",
                                  index + 1, len(items), item_id, request.table_name, exc)

                saved.extend(item_id for _, item_id in sorted(batch_saved))

        log.debug("Saved %d/%d items to %s", len(saved), len(items), request.table_name)
        return saved


def _build_record(
    item: ExtractedItem,
    index: int,
    total: int,
    timestamp: str,
    context: dict[str, Any],
    response_status: int,
) -> dict[str, Any]:
    return {
        "id":        item.item_id,
        "item":      item.payload,
        "timestamp": timestamp,
        "metadata":  {
            "request":         context,
            "response_status": response_status,
            "item_index":      index,
            "total_items":     total,
            "original_id":     item.original_id,
        },
    }
