"""
chunkbatch - Chunk-oriented batch job engine

Runs named jobs whose steps read records, process them and write them in
committed chunks. Every execution is tracked durably so a failed or stopped
run restarts from its last committed chunk.
"""

__version__ = "0.1.0"


__all__ = ["BatchConfig", "load_config", "get_chunkbatch_home"]

from .config import BatchConfig, load_config, get_chunkbatch_home
