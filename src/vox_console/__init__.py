"""Operator console for a Vox-supervised team of agents."""
