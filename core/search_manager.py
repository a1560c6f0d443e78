from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from operator import attrgetter
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from config.settings import SEARCH_GATHER_WORKERS
from core.errors import VirtualToolError
from core.logger import log_debug, log_error, log_event
from core.metrics import record_host_failure, record_search, record_search_round
from schemas.machines import PhysicalMachine, VirtualMachine
from schemas.search import SearchCriteria
from schemas.types import DEFAULT_SEARCH_ORDER, SearchCriterionType, SearchMode

# criterion type -> accessor of the matching VirtualMachine attribute
VM_ATTRIBUTES = {
    SearchCriterionType.ID: attrgetter("id"),
    SearchCriterionType.NAME: attrgetter("name"),
    SearchCriterionType.OS_TYPE: attrgetter("os_type"),
    SearchCriterionType.OS_IDENTIFIER: attrgetter("os_identifier"),
    SearchCriterionType.CPU_COUNT: attrgetter("cpu_count"),
    SearchCriterionType.CPU_EXEC_CAP: attrgetter("cpu_execution_cap"),
    SearchCriterionType.RAM: attrgetter("ram_size"),
    SearchCriterionType.HDD_FREE_SPACE: attrgetter("hdd_free_space"),
    SearchCriterionType.VRAM: attrgetter("vram_size"),
    SearchCriterionType.MONITOR_COUNT: attrgetter("monitor_count"),
    SearchCriterionType.HDD_TOTAL_SIZE: attrgetter("hdd_total_size"),
}


class ConnectedHosts(Protocol):
    def get_connected_physical_machines(self) -> List[PhysicalMachine]:
        ...


class VmSource(Protocol):
    def get_virtual_machines(self, host: PhysicalMachine) -> List[VirtualMachine]:
        """May raise ConnectionFailureError."""
        ...


class RoundOutcome(str, Enum):
    # nobody in the pool satisfies the criterion
    SKIPPED = "skipped"
    # first round with any match, becomes the accumulated result
    ANCHORED = "anchored"
    # overlap with the accumulated result, which shrinks to the overlap
    REFINED = "refined"
    # no overlap, accumulated result is kept as it was
    DISCARDED = "discarded"


# ----------------------------------------------------------------------
# Tolerance and per-criterion evaluation
# ----------------------------------------------------------------------
def normalize_deviation(deviation: int) -> int:
    """
    Deviation is a percentage in [0, 100]; anything outside resets to 0.
    """
    if 0 <= deviation <= 100:
        return deviation
    return 0


def acceptance_interval(required: int, deviation: int) -> Tuple[int, int]:
    """
    Closed interval of values accepted for a capacity criterion.

    Only values at or above the required one match; the upper bound grows
    by `deviation` percent of the required value (rounded down).
    """
    return required, required + required * deviation // 100


def matches_criterion(
    vm: VirtualMachine,
    criterion: SearchCriterionType,
    required,
    mode: SearchMode,
    deviation: int = 0,
) -> bool:
    actual = VM_ATTRIBUTES[criterion](vm)
    if mode is SearchMode.TOLERANT and criterion.is_capacity:
        low, high = acceptance_interval(required, deviation)
        return low <= actual <= high
    return actual == required


def evaluate_criterion(
    pool: Sequence[VirtualMachine],
    criterion: SearchCriterionType,
    required,
    mode: SearchMode,
    deviation: int = 0,
) -> List[VirtualMachine]:
    """
    Return the VMs of the whole pool satisfying a single criterion.
    """
    return [vm for vm in pool if matches_criterion(vm, criterion, required, mode, deviation)]


# ----------------------------------------------------------------------
# Search order
# ----------------------------------------------------------------------
def resolve_search_order(
    order: Optional[Iterable[Optional[SearchCriterionType]]],
    criteria: Optional[SearchCriteria] = None,
) -> List[SearchCriterionType]:
    """
    Turn a caller supplied search order into the sequence of rounds.

    - None entries and repeated entries (after the first one) are dropped.
    - An order left empty by that is replaced by DEFAULT_SEARCH_ORDER.
    - Criterion types the caller did not mention are appended in their
      default order.
    - With `criteria` given, types whose value is unspecified are removed.
    """
    resolved: List[SearchCriterionType] = []
    for item in order or ():
        if item is None:
            continue
        criterion = SearchCriterionType(item)
        if criterion not in resolved:
            resolved.append(criterion)

    if not resolved:
        resolved = list(DEFAULT_SEARCH_ORDER)
    else:
        resolved.extend(c for c in DEFAULT_SEARCH_ORDER if c not in resolved)

    if criteria is not None:
        resolved = [c for c in resolved if criteria.is_specified(c)]
    return resolved


# ----------------------------------------------------------------------
# Tolerant accumulation
# ----------------------------------------------------------------------
def _intersect(
    accumulated: Sequence[VirtualMachine], candidate: Sequence[VirtualMachine]
) -> List[VirtualMachine]:
    candidate_set = set(candidate)
    return [vm for vm in accumulated if vm in candidate_set]


def accumulate_round(
    accumulated: Optional[List[VirtualMachine]],
    candidate: List[VirtualMachine],
) -> Tuple[RoundOutcome, Optional[List[VirtualMachine]]]:
    """
    One step of the tolerant search.

    `accumulated` is None until some round matched anything. Returns the
    outcome of the round together with the new accumulated result.
    """
    if not candidate:
        return RoundOutcome.SKIPPED, accumulated

    if accumulated is None:
        return RoundOutcome.ANCHORED, list(candidate)

    intersection = _intersect(accumulated, candidate)
    if intersection:
        return RoundOutcome.REFINED, intersection
    return RoundOutcome.DISCARDED, accumulated


class SearchManager:
    """
    Searches virtual machines across all connected physical machines.

    The pool of VMs is gathered once per search from every connected host;
    a host that fails to answer contributes no VMs. Every round evaluates one
    criterion against that whole pool and the rounds are combined either as
    a strict AND (ABSOLUTE_EQUALITY) or by the best-available accumulation
    of `accumulate_round` (TOLERANT).

    max_deviation is the percentage by which RAM, VRAM and disk sizes of a VM
    may exceed the required values in TOLERANT mode.
    """

    def __init__(
        self,
        connection_manager: ConnectedHosts,
        vm_source: VmSource,
        max_deviation: int = 0,
        gather_workers: int = SEARCH_GATHER_WORKERS,
    ) -> None:
        self.connection_manager = connection_manager
        self.vm_source = vm_source
        self.gather_workers = max(gather_workers, 1)
        self._max_deviation = normalize_deviation(max_deviation)

    @property
    def max_deviation(self) -> int:
        return self._max_deviation

    @max_deviation.setter
    def max_deviation(self, deviation: int) -> None:
        self._max_deviation = normalize_deviation(deviation)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def search(
        self,
        criteria: Optional[SearchCriteria],
        mode: Optional[SearchMode],
        order: Optional[Iterable[Optional[SearchCriterionType]]] = None,
    ) -> List[VirtualMachine]:
        if criteria is None or criteria.is_vacuous() or mode is None:
            return []
        mode = SearchMode(mode)
        deviation = self._max_deviation

        hosts = list(self.connection_manager.get_connected_physical_machines())
        if not hosts:
            return []

        pool = self._gather_pool(hosts)
        rounds = resolve_search_order(order, criteria)

        if mode is SearchMode.ABSOLUTE_EQUALITY:
            result = self._match_all(pool, rounds, criteria)
        else:
            result = self._match_best_available(pool, rounds, criteria, deviation)

        record_search(mode.value, len(result))
        log_event(
            f"[search] mode={mode.value} deviation={deviation} hosts={len(hosts)} "
            f"pool={len(pool)} rounds={[c.value for c in rounds]} matched={len(result)}"
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _fetch_host_vms(self, host: PhysicalMachine) -> List[VirtualMachine]:
        try:
            return list(self.vm_source.get_virtual_machines(host))
        except VirtualToolError as e:
            log_error(f"[search] Virtual machines of {host} could not be retrieved, skipping host: {e}")
            record_host_failure()
            return []

    def _gather_pool(self, hosts: List[PhysicalMachine]) -> List[VirtualMachine]:
        if self.gather_workers > 1 and len(hosts) > 1:
            workers = min(self.gather_workers, len(hosts))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                per_host = list(executor.map(self._fetch_host_vms, hosts))
        else:
            per_host = [self._fetch_host_vms(host) for host in hosts]

        return [vm for vms in per_host for vm in vms]

    def _match_all(
        self,
        pool: List[VirtualMachine],
        rounds: List[SearchCriterionType],
        criteria: SearchCriteria,
    ) -> List[VirtualMachine]:
        matched = list(pool)
        for criterion in rounds:
            candidate = evaluate_criterion(
                pool, criterion, criteria.value_for(criterion), SearchMode.ABSOLUTE_EQUALITY
            )
            matched = _intersect(matched, candidate)
            log_debug(f"[search] {criterion.value}: {len(candidate)} candidates, {len(matched)} left")
            if not matched:
                return []
        return matched

    def _match_best_available(
        self,
        pool: List[VirtualMachine],
        rounds: List[SearchCriterionType],
        criteria: SearchCriteria,
        deviation: int,
    ) -> List[VirtualMachine]:
        accumulated: Optional[List[VirtualMachine]] = None
        for criterion in rounds:
            candidate = evaluate_criterion(
                pool, criterion, criteria.value_for(criterion), SearchMode.TOLERANT, deviation
            )
            outcome, accumulated = accumulate_round(accumulated, candidate)
            record_search_round(outcome.value)
            log_debug(f"[search] {criterion.value}: {len(candidate)} candidates, round {outcome.value}")
        return accumulated if accumulated is not None else []
