"""
Pairing challenges — issuing the newest challenge and showing it to a human.
"""

from devicelink.challenge.issuer import PairingChallenge, PairingChallengeIssuer
from devicelink.challenge.renderers import (
    ChallengeRenderer,
    ConsoleChallengeRenderer,
    FileChallengeRenderer,
    get_challenge_renderer,
)

__all__ = [
    "PairingChallenge",
    "PairingChallengeIssuer",
    "ChallengeRenderer",
    "ConsoleChallengeRenderer",
    "FileChallengeRenderer",
    "get_challenge_renderer",
]
