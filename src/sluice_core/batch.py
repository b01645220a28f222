# src/sluice_core/batch.py

import logging
from typing import Any, Dict, Iterable, Iterator, List

logger = logging.getLogger(__name__)


def read_in_batches(
    source_iterable: Iterable[Dict[str, Any]],
    batch_size: int = 1000
) -> Iterator[List[Dict[str, Any]]]:
    """
    Groups a stream of records into lists without materializing the stream.

    Args:
        source_iterable: Iterable yielding row-maps
        batch_size: Records per batch

    Yields:
        Lists of at most batch_size records, in encounter order
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    batch = []
    for record in source_iterable:
        batch.append(record)
        if len(batch) >= batch_size:
            logger.debug(f"Yielding batch of {len(batch)} records")
            yield batch
            batch = []

    if batch:
        logger.debug(f"Yielding final batch of {len(batch)} records")
        yield batch
