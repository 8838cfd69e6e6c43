"""
Escrow Client

Composes, signs, submits and confirms escrow actions:
- Composer: ordered instruction lists with token account setup
- State machine: which stake actions are legal right now
- Signers: local keypairs and approval-gated signing
- Orchestrator: phase tracking, bounded confirmation, per-key locking
- Actions: one coroutine per user action
"""

from .actions import EscrowActions
from .composer import ActionPlan, InstructionPipeline, TransactionComposer
from .orchestrator import ActionOrchestrator, ActionRun, ActionStatus, ConfirmationPolicy, Phase
from .signer import ApprovalSigner, KeypairSigner, Signer, load_keypair_file
from .state_machine import StakeStateMachine

__all__ = [
    'EscrowActions',
    'ActionPlan', 'InstructionPipeline', 'TransactionComposer',
    'ActionOrchestrator', 'ActionRun', 'ActionStatus', 'ConfirmationPolicy', 'Phase',
    'ApprovalSigner', 'KeypairSigner', 'Signer', 'load_keypair_file',
    'StakeStateMachine',
]
