"""Elastic GPU worker service package.

Layout:
- ``workers``: the per-delivery ``JobWorker`` and the ``WorkerPool`` of loops.
- ``scaling``: queue-driven autoscaler with Spot/On-Demand fallback.
- ``inference``: generation backends (ComfyUI, deterministic).
- ``runtime``: component wiring, metrics facade and Spot interruption monitor.
"""
