"""Organizational unit placement of existing accounts.

Moves are independent of each other. They are issued in small chunks to
stay under the Organizations API rate, and a failed move is recorded
against its account without stopping the others.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from botocore.exceptions import ClientError

from ..core.aws_client import AWSClientManager
from ..core.config import AcceleratorSettings
from ..core.partition import get_global_region
from ..core.results import Failure
from ..core.throttle import throttling_backoff
from .models import AccountRecord


@dataclass(frozen=True)
class AccountMove:
    """One account to relocate from its current parent to its target."""

    account_id: str
    email: str
    source_parent_id: str
    destination_parent_id: str


@dataclass
class MoveReport:
    moved: List[AccountMove] = field(default_factory=list)
    failures: List[Failure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures


class AccountMoveOrchestrator:
    """Computes and applies account moves to match configured units."""

    def __init__(self, aws_client: AWSClientManager, settings: AcceleratorSettings,
                 sleep: Callable[[float], None] = time.sleep,
                 logger: Optional[logging.Logger] = None) -> None:
        self.aws_client = aws_client
        self.settings = settings
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self._org_client = None

    def _get_client(self):
        if self._org_client is None:
            self._org_client = self.aws_client.get_client(
                'organizations', get_global_region(self.settings.partition)
            )
        return self._org_client

    def plan_moves(self, records: Iterable[AccountRecord], ou_ids: Dict[str, str],
                   current_parents: Dict[str, str]) -> Tuple[List[AccountMove], List[Failure]]:
        """Work out which accounts sit in the wrong unit.

        Accounts without an AWS id have not been created yet and are
        skipped. An account whose target unit has no id cannot be moved
        and is returned as a failure.

        Args:
            records: Account records with their desired unit
            ou_ids: Unit path to id, including ``Root``
            current_parents: Account id to its current parent id

        Returns:
            Tuple of (moves, failures)
        """
        moves: List[AccountMove] = []
        failures: List[Failure] = []

        for record in records:
            if not record.account_id:
                continue
            destination = ou_ids.get(record.organizational_unit)
            if destination is None:
                failures.append(Failure(
                    record.email, 'move-account',
                    f"Organizational unit '{record.organizational_unit}' not found",
                ))
                continue
            source = current_parents.get(record.account_id)
            if source is None:
                failures.append(Failure(
                    record.email, 'move-account',
                    f"Current parent of account {record.account_id} not found",
                ))
                continue
            if source != destination:
                moves.append(AccountMove(record.account_id, record.email, source, destination))

        return moves, failures

    def apply_moves(self, moves: List[AccountMove]) -> MoveReport:
        """Issue ``MoveAccount`` for each planned move.

        Args:
            moves: Planned moves

        Returns:
            MoveReport with completed moves and per-account failures
        """
        report = MoveReport()
        client = self._get_client()
        chunk_size = max(1, self.settings.move_chunk_size)

        for start in range(0, len(moves), chunk_size):
            if start:
                self.sleep(1)
            for move in moves[start:start + chunk_size]:
                try:
                    throttling_backoff(
                        lambda: client.move_account(
                            AccountId=move.account_id,
                            SourceParentId=move.source_parent_id,
                            DestinationParentId=move.destination_parent_id,
                        ),
                        self.settings.retry,
                    )
                except ClientError as e:
                    if e.response['Error']['Code'] == 'DuplicateAccountException':
                        self.logger.warning("Account %s already in %s", move.account_id,
                                            move.destination_parent_id)
                        report.moved.append(move)
                        continue
                    self.logger.error("Failed to move account %s (%s): %s",
                                      move.account_id, move.email, e)
                    report.failures.append(Failure(
                        f"{move.email} ({move.account_id})", 'move-account', str(e)
                    ))
                    continue
                self.logger.info("Moved account %s to %s", move.account_id, move.destination_parent_id)
                report.moved.append(move)

        return report

    def move_accounts(self, records: Iterable[AccountRecord], ou_ids: Dict[str, str],
                      current_parents: Dict[str, str]) -> MoveReport:
        """Plan and apply moves in one step."""
        moves, failures = self.plan_moves(records, ou_ids, current_parents)
        report = self.apply_moves(moves)
        report.failures = failures + report.failures
        if report.moved:
            print(f"✓ Moved {len(report.moved)} account(s) to their organizational units")
        return report
