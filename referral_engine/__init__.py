"""
Referral program pathway completion and reward engine.

Decides whether a referee's onboarding pathway is complete, settles referral
rewards against a program's finite pool and keeps completion caps consistent
under concurrent evaluation.
"""

__version__ = "0.1.0"
