"""Inference backends (ComfyUI server, deterministic local renderer)."""
