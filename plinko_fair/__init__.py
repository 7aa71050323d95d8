"""Provably fair Plinko outcome engine."""
