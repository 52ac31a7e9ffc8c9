"""
HUMANITAS ID - Sybil-Resistant Biometric Identity Binding

Turns a raw behavioral or biometric capture into a durable, one-way
credential bound to one identity and one modality, and lets that identity
later prove continuity ("this sample came from the same person") while
rejecting duplicate registrations, replayed requests and brute-force
guessing.
"""

__version__ = "1.0.0"
__author__ = "HUMANITAS Research Team"
__email__ = "research@humanitas.org"
