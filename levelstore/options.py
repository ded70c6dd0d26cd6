"""Database, read and write options together with their effective defaults."""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Any, Callable, List, Optional

KIB = 1024
MIB = KIB * 1024
GIB = MIB * 1024

DEFAULT_BLOCK_CACHE_CAPACITY = 8 * MIB
DEFAULT_BLOCK_RESTART_INTERVAL = 16
DEFAULT_BLOCK_SIZE = 4 * KIB
DEFAULT_COMPACTION_EXPAND_LIMIT_FACTOR = 25
DEFAULT_COMPACTION_GP_OVERLAPS_FACTOR = 10
DEFAULT_COMPACTION_L0_TRIGGER = 4
DEFAULT_COMPACTION_SOURCE_LIMIT_FACTOR = 1
DEFAULT_COMPACTION_TABLE_SIZE = 2 * MIB
DEFAULT_COMPACTION_TABLE_SIZE_MULTIPLIER = 1.0
DEFAULT_COMPACTION_TOTAL_SIZE = 10 * MIB
DEFAULT_COMPACTION_TOTAL_SIZE_MULTIPLIER = 10.0
DEFAULT_ITERATOR_SAMPLING_RATE = 1 * MIB
DEFAULT_OPEN_FILES_CACHE_CAPACITY = 500
DEFAULT_WRITE_BUFFER = 4 * MIB
DEFAULT_WRITE_L0_PAUSE_TRIGGER = 12
DEFAULT_WRITE_L0_SLOWDOWN_TRIGGER = 8

CACHED_LEVELS = 7


class Compression(IntEnum):
    """Block compression algorithm of a sorted table."""

    DEFAULT = 0
    NONE = 1
    SNAPPY = 2

    def __str__(self) -> str:
        return {
            Compression.DEFAULT: "default",
            Compression.NONE: "none",
            Compression.SNAPPY: "snappy",
        }.get(self, "invalid")


DEFAULT_COMPRESSION_TYPE = Compression.SNAPPY


class Strict(IntFlag):
    """Strictness flags of a database or a read operation."""

    MANIFEST = 1
    JOURNAL_CHECKSUM = 2
    JOURNAL = 4
    BLOCK_CHECKSUM = 8
    COMPACTION = 16
    READER = 32
    RECOVERY = 64
    # Only meaningful for ReadOptions: its flags replace the database ones.
    OVERRIDE = 128

    ALL = 127
    DEFAULT = 2 | 8 | 16 | 32
    # A non-zero value holding none of the real flags; disables the defaults.
    NO_STRICT = 128


DEFAULT_STRICT = Strict.DEFAULT


@dataclass
class Options:
    """Optional parameters of a database; zero values select the defaults."""

    alt_filters: Optional[List[Any]] = None
    block_cacher: Optional[Callable[[int], Any]] = None
    block_cache_capacity: int = 0
    block_restart_interval: int = 0
    block_size: int = 0
    compaction_expand_limit_factor: int = 0
    compaction_gp_overlaps_factor: int = 0
    compaction_l0_trigger: int = 0
    compaction_source_limit_factor: int = 0
    compaction_table_size_base: int = 0
    compaction_table_size_multiplier: float = 0.0
    compaction_table_size_multiplier_per_level: Optional[List[float]] = None
    compaction_total_size_base: int = 0
    compaction_total_size_multiplier: float = 0.0
    compaction_total_size_multiplier_per_level: Optional[List[float]] = None
    comparer: Any = None
    compression: int = Compression.DEFAULT
    disable_buffer_pool: bool = False
    disable_block_cache: bool = False
    disable_compaction_backoff: bool = False
    disable_large_batch_transaction: bool = False
    error_if_exist: bool = False
    error_if_missing: bool = False
    filter: Any = None
    iterator_sampling_rate: int = 0
    no_sync: bool = False
    no_write_merge: bool = False
    open_files_cacher: Optional[Callable[[int], Any]] = None
    open_files_cache_capacity: int = 0
    read_only: bool = False
    strict: int = 0
    write_buffer: int = 0
    write_l0_pause_trigger: int = 0
    write_l0_slowdown_trigger: int = 0

    def block_cache_capacity_value(self) -> int:
        if self.block_cache_capacity == 0:
            return DEFAULT_BLOCK_CACHE_CAPACITY
        return max(self.block_cache_capacity, 0)

    def block_restart_interval_value(self) -> int:
        if self.block_restart_interval <= 0:
            return DEFAULT_BLOCK_RESTART_INTERVAL
        return self.block_restart_interval

    def block_size_value(self) -> int:
        if self.block_size <= 0:
            return DEFAULT_BLOCK_SIZE
        return self.block_size

    def compression_value(self) -> Compression:
        value = int(self.compression)
        if value <= Compression.DEFAULT or value > Compression.SNAPPY:
            return DEFAULT_COMPRESSION_TYPE
        return Compression(value)

    def compaction_l0_trigger_value(self) -> int:
        if self.compaction_l0_trigger == 0:
            return DEFAULT_COMPACTION_L0_TRIGGER
        return self.compaction_l0_trigger

    def open_files_cache_capacity_value(self) -> int:
        if self.open_files_cache_capacity == 0:
            return DEFAULT_OPEN_FILES_CACHE_CAPACITY
        return max(self.open_files_cache_capacity, 0)

    def iterator_sampling_rate_value(self) -> int:
        if self.iterator_sampling_rate <= 0:
            return DEFAULT_ITERATOR_SAMPLING_RATE
        return self.iterator_sampling_rate

    def write_buffer_value(self) -> int:
        if self.write_buffer <= 0:
            return DEFAULT_WRITE_BUFFER
        return self.write_buffer

    def write_l0_pause_trigger_value(self) -> int:
        if self.write_l0_pause_trigger == 0:
            return DEFAULT_WRITE_L0_PAUSE_TRIGGER
        return self.write_l0_pause_trigger

    def write_l0_slowdown_trigger_value(self) -> int:
        if self.write_l0_slowdown_trigger == 0:
            return DEFAULT_WRITE_L0_SLOWDOWN_TRIGGER
        return self.write_l0_slowdown_trigger

    def compaction_expand_limit(self, level: int) -> int:
        factor = self.compaction_expand_limit_factor
        if factor <= 0:
            factor = DEFAULT_COMPACTION_EXPAND_LIMIT_FACTOR
        return self.compaction_table_size(level + 1) * factor

    def compaction_gp_overlaps(self, level: int) -> int:
        factor = self.compaction_gp_overlaps_factor
        if factor <= 0:
            factor = DEFAULT_COMPACTION_GP_OVERLAPS_FACTOR
        return self.compaction_table_size(level + 2) * factor

    def compaction_source_limit(self, level: int) -> int:
        factor = self.compaction_source_limit_factor
        if factor <= 0:
            factor = DEFAULT_COMPACTION_SOURCE_LIMIT_FACTOR
        return self.compaction_table_size(level + 1) * factor

    def compaction_table_size(self, level: int) -> int:
        base = self.compaction_table_size_base
        if base <= 0:
            base = DEFAULT_COMPACTION_TABLE_SIZE
        mult = _level_multiplier(
            level,
            self.compaction_table_size_multiplier_per_level,
            self.compaction_table_size_multiplier,
            DEFAULT_COMPACTION_TABLE_SIZE_MULTIPLIER,
        )
        return int(float(base) * mult)

    def compaction_total_size(self, level: int) -> int:
        base = self.compaction_total_size_base
        if base <= 0:
            base = DEFAULT_COMPACTION_TOTAL_SIZE
        mult = _level_multiplier(
            level,
            self.compaction_total_size_multiplier_per_level,
            self.compaction_total_size_multiplier,
            DEFAULT_COMPACTION_TOTAL_SIZE_MULTIPLIER,
        )
        return int(float(base) * mult)

    def strict_enabled(self, flag: int) -> bool:
        """Report whether any of the given strict flags is in effect."""
        strict = self.strict if self.strict else DEFAULT_STRICT
        return (int(strict) & int(flag)) != 0


def _level_multiplier(
    level: int,
    per_level: Optional[List[float]],
    multiplier: float,
    default: float,
) -> float:
    mult = 0.0
    if per_level and level < len(per_level) and per_level[level] > 0:
        mult = per_level[level]
    elif multiplier > 0:
        mult = math.pow(multiplier, level)
    if mult == 0:
        mult = math.pow(default, level)
    return mult


@dataclass
class ReadOptions:
    """Optional parameters of a read operation."""

    dont_fill_cache: bool = False
    strict: int = 0

    def strict_enabled(self, flag: int) -> bool:
        return (int(self.strict) & int(flag)) != 0


@dataclass
class WriteOptions:
    """Optional parameters of a write operation."""

    no_write_merge: bool = False
    sync: bool = False


def read_strict(
    options: Optional[Options], read_options: Optional[ReadOptions], flag: int
) -> bool:
    """Combine database and read strictness for the given flag."""
    read_enabled = read_options is not None and read_options.strict_enabled(flag)
    if read_options is not None and read_options.strict_enabled(Strict.OVERRIDE):
        return read_enabled
    db_enabled = (options or Options()).strict_enabled(flag)
    return db_enabled or read_enabled


def dup_options(options: Optional[Options]) -> Options:
    """Return a shallow copy of the options with the strict level filled in."""
    new = copy.copy(options) if options is not None else Options()
    if not new.strict:
        new.strict = DEFAULT_STRICT
    return new


class CachedOptions:
    """Options with the per-level compaction limits of the low levels precomputed."""

    def __init__(self, options: Optional[Options]) -> None:
        self.options = options if options is not None else Options()
        levels = range(CACHED_LEVELS)
        self._expand_limit = [self.options.compaction_expand_limit(lv) for lv in levels]
        self._gp_overlaps = [self.options.compaction_gp_overlaps(lv) for lv in levels]
        self._source_limit = [self.options.compaction_source_limit(lv) for lv in levels]
        self._table_size = [self.options.compaction_table_size(lv) for lv in levels]
        self._total_size = [self.options.compaction_total_size(lv) for lv in levels]

    def __getattr__(self, name: str) -> Any:
        if name == "options":
            raise AttributeError(name)
        return getattr(self.options, name)

    def compaction_expand_limit(self, level: int) -> int:
        if level < CACHED_LEVELS:
            return self._expand_limit[level]
        return self.options.compaction_expand_limit(level)

    def compaction_gp_overlaps(self, level: int) -> int:
        if level < CACHED_LEVELS:
            return self._gp_overlaps[level]
        return self.options.compaction_gp_overlaps(level)

    def compaction_source_limit(self, level: int) -> int:
        if level < CACHED_LEVELS:
            return self._source_limit[level]
        return self.options.compaction_source_limit(level)

    def compaction_table_size(self, level: int) -> int:
        if level < CACHED_LEVELS:
            return self._table_size[level]
        return self.options.compaction_table_size(level)

    def compaction_total_size(self, level: int) -> int:
        if level < CACHED_LEVELS:
            return self._total_size[level]
        return self.options.compaction_total_size(level)