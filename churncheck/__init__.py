"""
Model-based verification harness for a cluster's replicated command log.

The ``harness`` package replays interleaved actor writes through a cluster
model and checks scheduler invariants on every transition. The
``exploration`` module searches interleavings with hypothesis, which
shrinks the ones that fail.
"""
