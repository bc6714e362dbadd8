"""
Contracts Module

This module defines the explicit interfaces and data transfer objects
that form the contracts between layers. All inter-layer communication
MUST use these contracts. No layer may import implementation details
from another layer.

DESIGN PRINCIPLES:
==================
1. All contract types are immutable (frozen dataclasses)
2. All fatal conditions are exceptions carrying an explicit Error record
3. Closed sets (profiles, vendors, optimization members, preemption
   models, phases) are enums
4. All timestamps use UTC and are never mutated
5. Rendering of config and module lines is deterministic
"""
