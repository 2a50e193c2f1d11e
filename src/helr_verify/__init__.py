"""
HELR-Verify - Encrypted Biometric Verification

Privacy-preserving biometric verification with homomorphically encrypted
HELR classifier tables. Probe features, per-feature scores and the decision
threshold stay encrypted; only the final accept/reject bit is decrypted.

This package implements a research proof of concept of the matching protocol
on top of a simulated LWE evaluation engine.
"""

__version__ = "1.0.0"
__author__ = "HELR-Verify Research Team"
