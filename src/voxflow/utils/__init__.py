"""
Utility Modules for voxflow.

    - audio.py: WAV encoding/decoding, resampling, RNG helpers
    - timeit.py: Performance measurement utilities
"""
