from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

import config
from config import ConsensusSettings
from errors import ConsensusProposalError, RpcError
from utils import Backoff, normalize_address

logger = logging.getLogger(__name__)


@dataclass
class SignerEndpoint:
    """An existing validator the manager can vote through."""

    name: str
    address: str
    client: Any  # rpc.BesuRpcClient or anything with the same clique_* methods


@dataclass
class AdmissionResult:
    address: str
    authorize: bool = True
    proposers: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[ConsensusProposalError] = field(default_factory=list)
    # Whether the final clique_getSigners reflected the vote.
    admitted: bool = False
    signers: Optional[List[str]] = None
    network: Optional[str] = None

    @property
    def proposals(self) -> int:
        return len(self.proposers)


class ConsensusMembershipManager:
    """
    Votes nodes in and out of the Clique signer set through existing signers.

    Best-effort by nature: a change only takes effect once a majority of
    signers cast the same vote, which this manager cannot guarantee. Failures
    are collected on the AdmissionResult and logged; nothing here raises for
    a failed vote.
    """

    def __init__(
        self,
        consensus_settings: Optional[ConsensusSettings] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        network: Optional[str] = None,
    ) -> None:
        self._settings = consensus_settings or config.settings.consensus
        self._sleep = sleep
        self._network = network

    def propose_new_signer(
        self, new_signer: str, existing_signers: Sequence[SignerEndpoint], network: Optional[str] = None
    ) -> AdmissionResult:
        address = normalize_address(new_signer)
        if not existing_signers:
            logger.info("No existing signers; %s is a signer from genesis", address)
            return AdmissionResult(address=address, admitted=True, network=network or self._network)
        return self._vote(address, True, existing_signers, network or self._network)

    def propose_signer_removal(
        self, signer: str, remaining_signers: Sequence[SignerEndpoint], network: Optional[str] = None
    ) -> AdmissionResult:
        address = normalize_address(signer)
        if not remaining_signers:
            logger.warning("No remaining signers to vote %s out", address)
            return AdmissionResult(address=address, authorize=False, network=network or self._network)
        return self._vote(address, False, remaining_signers, network or self._network)

    def _fail(self, result: AdmissionResult, endpoint: SignerEndpoint, message: str) -> None:
        error = ConsensusProposalError(message, proposer=endpoint.name, network=result.network, node=endpoint.name)
        result.errors.append(error)
        logger.warning("Clique vote for %s via %s failed: %s", result.address, endpoint.name, message)

    def _vote(
        self, address: str, authorize: bool, endpoints: Sequence[SignerEndpoint], network: Optional[str]
    ) -> AdmissionResult:
        result = AdmissionResult(address=address, authorize=authorize, network=network)
        verb = "add" if authorize else "remove"

        for endpoint in endpoints:
            proposer = normalize_address(endpoint.address)
            try:
                signers = endpoint.client.clique_get_signers()
            except RpcError as exc:
                self._fail(result, endpoint, f"clique_getSigners failed: {exc}")
                continue
            if proposer not in signers:
                logger.debug("%s is not a current signer; skipping its vote", endpoint.name)
                result.skipped.append(endpoint.name)
                continue
            if (address in signers) == authorize:
                logger.info("%s already %s the signer set", address, "in" if authorize else "out of")
                result.admitted = True
                result.signers = signers
                return result

            if result.proposers and self._settings.proposal_pause > 0:
                self._sleep(self._settings.proposal_pause)
            try:
                accepted = endpoint.client.clique_propose(address, authorize)
            except RpcError as exc:
                self._fail(result, endpoint, f"clique_propose failed: {exc}")
                continue
            if not accepted:
                self._fail(result, endpoint, "clique_propose returned false")
                continue
            result.proposers.append(endpoint.name)
            logger.info("%s voted to %s signer %s", endpoint.name, verb, address)

        if not result.proposers:
            logger.warning("No signer accepted the vote to %s %s", verb, address)
            return result

        if self._settings.settle_delay > 0:
            self._sleep(self._settings.settle_delay)
        self._check(result, endpoints)
        return result

    def _check(self, result: AdmissionResult, endpoints: Sequence[SignerEndpoint]) -> None:
        voters = [endpoint for endpoint in endpoints if endpoint.name in result.proposers]

        def read_signers() -> List[str]:
            last_error: Optional[RpcError] = None
            for endpoint in voters:
                try:
                    return endpoint.client.clique_get_signers()
                except RpcError as exc:
                    last_error = exc
            raise last_error or RpcError("-", "clique_getSigners", "no signer endpoint answered")

        backoff = Backoff(
            max_attempts=self._settings.admission_attempts,
            interval=self._settings.admission_interval,
            sleep=self._sleep,
        )
        poll = backoff.poll(
            read_signers,
            success=lambda signers: (result.address in signers) == result.authorize,
            label=f"clique admission of {result.address}",
        )
        result.admitted = poll.succeeded
        result.signers = poll.value
        if poll.succeeded:
            logger.info(
                "Signer %s %s after %s vote(s)",
                result.address,
                "admitted" if result.authorize else "removed",
                result.proposals,
            )
        else:
            logger.warning(
                "Signer %s not yet %s after %s vote(s); a majority of signers must agree",
                result.address,
                "admitted" if result.authorize else "removed",
                result.proposals,
            )
