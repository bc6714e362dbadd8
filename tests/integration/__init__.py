"""
Integration Tests Package

End-to-end sessions against a throwaway workspace and a fake makepkg.

TEST AXIOMS:
=============
1. Determinism: same workspace + spec = byte-identical script and config
2. One writer: only the Patching lease may touch workspace files
3. Explicit failure: every terminal outcome names its error code
"""
