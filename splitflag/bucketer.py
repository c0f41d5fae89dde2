import logging

from typing import Optional, Sequence, Tuple, Union

from .common_types import Experiment, Group, Holdout, TrafficRange, Variation

logger = logging.getLogger("splitflag.bucketer")

HASH_SEED = 1
MAX_HASH_VALUE = 2 ** 32
MAX_TRAFFIC_VALUE = 10000
GROUP_POLICY_RANDOM = "random"


def _rotl32(x: int, r: int) -> int:
    return ((x << r) | (x >> (32 - r))) & 0xFFFFFFFF


def _fmix32(h: int) -> int:
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & 0xFFFFFFFF
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & 0xFFFFFFFF
    h ^= h >> 16
    return h


def murmur3_32(data: Union[str, bytes], seed: int = HASH_SEED) -> int:
    """MurmurHash3 x86 32-bit, returned as an unsigned int."""
    if isinstance(data, str):
        data = data.encode("utf-8")

    c1 = 0xCC9E2D51
    c2 = 0x1B873593
    length = len(data)
    h = seed & 0xFFFFFFFF
    rounded_end = length & ~0x3

    for i in range(0, rounded_end, 4):
        k = int.from_bytes(data[i:i + 4], "little")
        k = (k * c1) & 0xFFFFFFFF
        k = _rotl32(k, 15)
        k = (k * c2) & 0xFFFFFFFF
        h ^= k
        h = _rotl32(h, 13)
        h = (h * 5 + 0xE6546B64) & 0xFFFFFFFF

    k = 0
    tail = length & 0x3
    if tail == 3:
        k ^= data[rounded_end + 2] << 16
    if tail >= 2:
        k ^= data[rounded_end + 1] << 8
    if tail >= 1:
        k ^= data[rounded_end]
        k = (k * c1) & 0xFFFFFFFF
        k = _rotl32(k, 15)
        k = (k * c2) & 0xFFFFFFFF
        h ^= k

    h ^= length
    return _fmix32(h)


def generate_bucket_value(bucketing_key: str) -> int:
    ratio = murmur3_32(bucketing_key, HASH_SEED) / MAX_HASH_VALUE
    return int(ratio * MAX_TRAFFIC_VALUE)


def find_bucket(bucket_value: int, traffic_allocation: Sequence[TrafficRange]) -> Optional[str]:
    for traffic in traffic_allocation:
        if bucket_value < traffic.end_of_range:
            return traffic.entity_id
    return None


def bucket_to_entity(bucketing_id: str, entity_id: str, traffic_allocation: Sequence[TrafficRange]) -> Optional[str]:
    """Hash ``bucketing_id + entity_id`` into [0, 10000) and pick the
    allocated entity. ``None`` means no allocation."""
    bucket_value = generate_bucket_value(bucketing_id + entity_id)
    logger.debug("Assigned bucket %s to bucketing key %s%s", bucket_value, bucketing_id, entity_id)
    return find_bucket(bucket_value, traffic_allocation)


class Bucketer(object):
    def bucket(
        self,
        bucketing_id: str,
        experiment: Union[Experiment, Holdout],
        group: Optional[Group] = None,
    ) -> Tuple[Optional[Variation], str]:
        """Bucket a user into one of the experiment's variations.

        For mutually exclusive groups the user must first land in this
        experiment's slice of the group allocation.
        """
        if group is not None and group.policy == GROUP_POLICY_RANDOM:
            selected = bucket_to_entity(bucketing_id, group.id, group.traffic_allocation)
            if not selected:
                return None, f'User not bucketed into any experiment of group "{group.id}".'
            if selected != experiment.id:
                return None, f'User not bucketed into experiment "{experiment.key}" of group "{group.id}".'

        variation_id = bucket_to_entity(bucketing_id, experiment.id, experiment.traffic_allocation)
        if not variation_id:
            return None, f'User not bucketed into any variation of "{experiment.key}".'

        variation = experiment.variations.get(variation_id)
        if variation is None:
            return None, f'Bucketed variation "{variation_id}" not found in "{experiment.key}".'
        return variation, f'User bucketed into variation "{variation.key}" of "{experiment.key}".'
