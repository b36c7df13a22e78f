"""
Mesh ledger collector: streams layers and malfeasance proofs from a node
into a local LevelDB store.
"""
__version__ = "0.1.0"
