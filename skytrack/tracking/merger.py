"""Track merging - combines a stored track with freshly fetched positions."""

from typing import Iterable, List, Sequence

from skytrack.ingestion.aeroapi_client import PositionSample
from skytrack.tracking.metrics import timestamp_epoch


def merge_track(
    existing: Sequence[PositionSample],
    incoming: Iterable[PositionSample],
) -> List[PositionSample]:
    """
    Merge incoming positions into an existing track.

    Samples are identified by their timestamp: an incoming sample whose
    timestamp is already present is dropped, so the stored copy always
    wins. The result is sorted ascending by time; the sort is stable, so
    samples with equal parsed times keep their relative order.

    merge_track(merge_track(a, b), b) == merge_track(a, b)
    """
    seen = {sample.timestamp for sample in existing}
    merged = list(existing)

    for sample in incoming:
        if sample.timestamp in seen:
            continue
        seen.add(sample.timestamp)
        merged.append(sample)

    merged.sort(key=lambda sample: timestamp_epoch(sample.timestamp))
    return merged
