from unittest.mock import MagicMock

import pytest

from clique.membership import ConsensusMembershipManager, SignerEndpoint
from config import ConsensusSettings
from errors import ConsensusProposalError, RpcError
from tests.fakes import SleepRecorder

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
CAROL = "0x" + "c4" * 20
NEWBIE = "0x" + "0e" * 20


def _endpoint(name, address, signers, accept=True):
    client = MagicMock()
    client.clique_get_signers.return_value = list(signers)
    client.clique_propose.return_value = accept
    return SignerEndpoint(name=name, address=address, client=client)


@pytest.fixture()
def sleeper():
    return SleepRecorder()


def _manager(sleeper, **overrides):
    settings = ConsensusSettings(proposal_pause=2.0, settle_delay=5.0, admission_attempts=1, admission_interval=5.0)
    for key, value in overrides.items():
        setattr(settings, key, value)
    return ConsensusMembershipManager(settings, sleep=sleeper, network="net1")


def test_no_existing_signers_is_noop(sleeper):
    result = _manager(sleeper).propose_new_signer(NEWBIE, [])
    assert result.admitted
    assert result.proposals == 0
    assert sleeper.calls == []


def test_single_signer_proposes_once_and_checks_admission(sleeper):
    alice = _endpoint("alice", ALICE, [ALICE])
    alice.client.clique_get_signers.side_effect = [[ALICE], [ALICE, NEWBIE]]

    result = _manager(sleeper).propose_new_signer(NEWBIE.upper().replace("0X", "0x"), [alice])

    alice.client.clique_propose.assert_called_once_with(NEWBIE, True)
    assert result.proposers == ["alice"]
    assert result.admitted
    assert result.signers == [ALICE, NEWBIE]
    assert sleeper.calls == [5.0]


def test_non_signers_are_skipped(sleeper):
    alice = _endpoint("alice", ALICE, [ALICE])
    bob = _endpoint("bob", BOB, [ALICE])

    result = _manager(sleeper).propose_new_signer(NEWBIE, [alice, bob])

    bob.client.clique_propose.assert_not_called()
    assert result.skipped == ["bob"]
    assert result.proposers == ["alice"]


def test_pause_between_proposals(sleeper):
    signers = [ALICE, BOB, CAROL]
    endpoints = [_endpoint(name, address, signers) for name, address in (("a", ALICE), ("b", BOB), ("c", CAROL))]

    result = _manager(sleeper).propose_new_signer(NEWBIE, endpoints)

    assert result.proposals == 3
    assert sleeper.calls == [2.0, 2.0, 5.0]
    assert not result.admitted


def test_proposal_failure_is_collected_not_raised(sleeper):
    alice = _endpoint("alice", ALICE, [ALICE])
    alice.client.clique_propose.side_effect = RpcError("http://alice", "clique_propose", "refused")

    result = _manager(sleeper).propose_new_signer(NEWBIE, [alice])

    assert not result.admitted
    assert result.proposals == 0
    assert len(result.errors) == 1
    error = result.errors[0]
    assert isinstance(error, ConsensusProposalError)
    assert error.proposer == "alice"
    assert error.network == "net1"


def test_rejected_proposal_is_collected(sleeper):
    alice = _endpoint("alice", ALICE, [ALICE], accept=False)
    result = _manager(sleeper).propose_new_signer(NEWBIE, [alice])
    assert result.proposals == 0
    assert len(result.errors) == 1


def test_get_signers_failure_skips_endpoint(sleeper):
    alice = _endpoint("alice", ALICE, [ALICE])
    alice.client.clique_get_signers.side_effect = RpcError("http://alice", "clique_getSigners", "timeout")
    bob = _endpoint("bob", BOB, [ALICE, BOB])

    result = _manager(sleeper).propose_new_signer(NEWBIE, [alice, bob])

    alice.client.clique_propose.assert_not_called()
    assert result.proposers == ["bob"]
    assert len(result.errors) == 1


def test_already_admitted_address_needs_no_vote(sleeper):
    alice = _endpoint("alice", ALICE, [ALICE, NEWBIE])
    result = _manager(sleeper).propose_new_signer(NEWBIE, [alice])
    alice.client.clique_propose.assert_not_called()
    assert result.admitted


def test_admission_polling_uses_backoff(sleeper):
    alice = _endpoint("alice", ALICE, [ALICE])
    alice.client.clique_get_signers.side_effect = [[ALICE], [ALICE], [ALICE], [ALICE, NEWBIE]]

    result = _manager(sleeper, admission_attempts=3, admission_interval=1.0).propose_new_signer(NEWBIE, [alice])

    assert result.admitted
    assert sleeper.calls == [5.0, 1.0, 1.0]


def test_signer_removal_votes_false(sleeper):
    alice = _endpoint("alice", ALICE, [ALICE, BOB])
    alice.client.clique_get_signers.side_effect = [[ALICE, BOB], [ALICE]]

    result = _manager(sleeper).propose_signer_removal(BOB, [alice])

    alice.client.clique_propose.assert_called_once_with(BOB, False)
    assert result.authorize is False
    assert result.admitted


def test_signer_removal_without_voters(sleeper):
    result = _manager(sleeper).propose_signer_removal(BOB, [])
    assert not result.admitted
    assert result.proposals == 0


def test_errors_carry_network_given_per_call(sleeper):
    alice = _endpoint("alice", ALICE, [ALICE], accept=False)
    manager = ConsensusMembershipManager(ConsensusSettings(settle_delay=0.0), sleep=sleeper)

    result = manager.propose_new_signer(NEWBIE, [alice], network="net7")

    assert result.network == "net7"
    assert [error.network for error in result.errors] == ["net7"]
