"""
Probing modules
TCP reachability, TLS inspection, banner grabbing and ownership challenges
"""

from reflector.scanner.probing.tcp_prober import TCPProber, ProbeOutcome
from reflector.scanner.probing.tls_analyzer import TLSAnalyzer, TLSAnalysisError
from reflector.scanner.probing.banner_grabber import BannerGrabber
from reflector.scanner.probing.challenge_verifier import ChallengeVerifier

__all__ = [
    'TCPProber',
    'ProbeOutcome',
    'TLSAnalyzer',
    'TLSAnalysisError',
    'BannerGrabber',
    'ChallengeVerifier',
]
