"""QR code encoding (error correction level M) and SVG rendering."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from itertools import cycle, groupby

QUIET_ZONE = 4
DARK_COLOR = "#000"
LIGHT_COLOR = "#fff"

_ALPHANUMERIC = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ $%*+-./:"
_EC_LEVEL_M_BITS = 0b00

# Level M: error-correction codewords per block and number of blocks, by version.
_ECC_PER_BLOCK = (
    10, 16, 26, 18, 24, 16, 18, 22, 22, 26, 30, 22, 22, 24, 24, 28, 28, 26, 26, 26,
    26, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28,
)
_NUM_BLOCKS = (
    1, 1, 1, 2, 2, 4, 4, 4, 5, 5, 5, 8, 9, 9, 10, 10, 11, 13, 14, 16,
    17, 17, 18, 20, 21, 23, 25, 26, 28, 29, 31, 33, 35, 37, 38, 40, 43, 45, 47, 49,
)

_FINDER_LIKE = re.compile(r"(?=(10111010000|00001011101))")

_MASKS: tuple[Callable[[int, int], bool], ...] = (
    lambda x, y: (x + y) % 2 == 0,
    lambda x, y: y % 2 == 0,
    lambda x, y: x % 3 == 0,
    lambda x, y: (x + y) % 3 == 0,
    lambda x, y: (x // 3 + y // 2) % 2 == 0,
    lambda x, y: x * y % 2 + x * y % 3 == 0,
    lambda x, y: (x * y % 2 + x * y % 3) % 2 == 0,
    lambda x, y: ((x + y) % 2 + x * y % 3) % 2 == 0,
)


class _Mode(Enum):
    NUMERIC = (0b0001, (10, 12, 14))
    ALPHANUMERIC = (0b0010, (9, 11, 13))
    BYTE = (0b0100, (8, 16, 16))

    @property
    def indicator(self) -> int:
        return self.value[0]

    def count_bits(self, version: int) -> int:
        widths = self.value[1]
        if version <= 9:
            return widths[0]
        if version <= 26:
            return widths[1]
        return widths[2]


@dataclass(frozen=True)
class QrMatrix:
    """An encoded QR symbol: rows of modules, True meaning dark."""

    version: int
    mask: int
    modules: tuple[tuple[bool, ...], ...]

    @property
    def size(self) -> int:
        return len(self.modules)

    def is_dark(self, x: int, y: int) -> bool:
        return self.modules[y][x]


# --- bit and codeword assembly ----------------------------------------------


def _append_bits(bits: list[int], value: int, length: int) -> None:
    bits.extend((value >> shift) & 1 for shift in reversed(range(length)))


def _choose_mode(payload: bytes) -> _Mode:
    if all(0x30 <= b <= 0x39 for b in payload):
        return _Mode.NUMERIC
    if all(chr(b) in _ALPHANUMERIC for b in payload):
        return _Mode.ALPHANUMERIC
    return _Mode.BYTE


def _payload_bits(mode: _Mode, payload: bytes) -> list[int]:
    bits: list[int] = []
    if mode is _Mode.NUMERIC:
        text = payload.decode("ascii")
        for start in range(0, len(text), 3):
            chunk = text[start : start + 3]
            _append_bits(bits, int(chunk), len(chunk) * 3 + 1)
    elif mode is _Mode.ALPHANUMERIC:
        values = [_ALPHANUMERIC.index(chr(b)) for b in payload]
        for start in range(0, len(values), 2):
            pair = values[start : start + 2]
            if len(pair) == 2:
                _append_bits(bits, pair[0] * 45 + pair[1], 11)
            else:
                _append_bits(bits, pair[0], 6)
    else:
        for byte in payload:
            _append_bits(bits, byte, 8)
    return bits


def _raw_data_modules(version: int) -> int:
    result = (16 * version + 128) * version + 64
    if version >= 2:
        num_align = version // 7 + 2
        result -= (25 * num_align - 10) * num_align - 55
        if version >= 7:
            result -= 36
    return result


def _data_codewords(version: int) -> int:
    ecc = _ECC_PER_BLOCK[version - 1] * _NUM_BLOCKS[version - 1]
    return _raw_data_modules(version) // 8 - ecc


def _choose_version(mode: _Mode, char_count: int, payload_bits: int) -> int:
    for version in range(1, 41):
        count_bits = mode.count_bits(version)
        if char_count >= 1 << count_bits:
            continue
        if 4 + count_bits + payload_bits <= _data_codewords(version) * 8:
            return version
    raise ValueError("data too long")


def _data_stream(payload: bytes) -> tuple[int, list[int]]:
    mode = _choose_mode(payload)
    body = _payload_bits(mode, payload)
    version = _choose_version(mode, len(payload), len(body))
    capacity = _data_codewords(version) * 8

    bits: list[int] = []
    _append_bits(bits, mode.indicator, 4)
    _append_bits(bits, len(payload), mode.count_bits(version))
    bits.extend(body)
    bits.extend([0] * min(4, capacity - len(bits)))
    bits.extend([0] * (-len(bits) % 8))

    codewords = [
        int("".join(map(str, bits[start : start + 8])), 2) for start in range(0, len(bits), 8)
    ]
    pad = cycle((0xEC, 0x11))
    codewords.extend(next(pad) for _ in range(capacity // 8 - len(codewords)))
    return version, codewords


# --- Reed-Solomon ------------------------------------------------------------


def _gf_multiply(x: int, y: int) -> int:
    z = 0
    for shift in reversed(range(8)):
        z = (z << 1) ^ ((z >> 7) * 0x11D)
        z ^= ((y >> shift) & 1) * x
    return z


def _rs_divisor(degree: int) -> list[int]:
    result = [0] * (degree - 1) + [1]
    root = 1
    for _ in range(degree):
        for j in range(degree):
            result[j] = _gf_multiply(result[j], root)
            if j + 1 < degree:
                result[j] ^= result[j + 1]
        root = _gf_multiply(root, 0x02)
    return result


def _rs_remainder(data: list[int], divisor: list[int]) -> list[int]:
    result = [0] * len(divisor)
    for byte in data:
        factor = byte ^ result.pop(0)
        result.append(0)
        result = [r ^ _gf_multiply(coef, factor) for r, coef in zip(result, divisor)]
    return result


def _interleave(data: list[int], version: int) -> list[int]:
    num_blocks = _NUM_BLOCKS[version - 1]
    ecc_len = _ECC_PER_BLOCK[version - 1]
    raw_codewords = _raw_data_modules(version) // 8
    num_short = num_blocks - raw_codewords % num_blocks
    short_len = raw_codewords // num_blocks
    divisor = _rs_divisor(ecc_len)

    blocks: list[list[int]] = []
    offset = 0
    for index in range(num_blocks):
        length = short_len - ecc_len + (0 if index < num_short else 1)
        chunk = data[offset : offset + length]
        offset += length
        ecc = _rs_remainder(chunk, divisor)
        if index < num_short:
            chunk = chunk + [0]
        blocks.append(chunk + ecc)

    result: list[int] = []
    for position in range(len(blocks[0])):
        for index, block in enumerate(blocks):
            if position != short_len - ecc_len or index >= num_short:
                result.append(block[position])
    return result


# --- matrix construction ----------------------------------------------------


def _alignment_positions(version: int) -> list[int]:
    if version == 1:
        return []
    size = version * 4 + 17
    num_align = version // 7 + 2
    step = (version * 8 + num_align * 3 + 5) // (num_align * 4 - 4) * 2
    positions = [size - 7 - i * step for i in range(num_align - 1)] + [6]
    return positions[::-1]


def _format_bits(mask: int) -> int:
    data = (_EC_LEVEL_M_BITS << 3) | mask
    rem = data
    for _ in range(10):
        rem = (rem << 1) ^ ((rem >> 9) * 0x537)
    return ((data << 10) | rem) ^ 0x5412


def _format_cells(size: int) -> Iterator[tuple[int, int, int]]:
    """Yield (x, y, bit index) for both copies of the format information."""
    for i in range(6):
        yield 8, i, i
    yield 8, 7, 6
    yield 8, 8, 7
    yield 7, 8, 8
    for i in range(9, 15):
        yield 14 - i, 8, i
    for i in range(8):
        yield size - 1 - i, 8, i
    for i in range(8, 15):
        yield 8, size - 15 + i, i


def _version_cells(version: int) -> Iterator[tuple[int, int, bool]]:
    if version < 7:
        return
    rem = version
    for _ in range(12):
        rem = (rem << 1) ^ ((rem >> 11) * 0x1F25)
    bits = (version << 12) | rem
    size = version * 4 + 17
    for i in range(18):
        dark = bool((bits >> i) & 1)
        a, b = size - 11 + i % 3, i // 3
        yield a, b, dark
        yield b, a, dark


def _penalty(grid: list[list[bool]]) -> int:
    size = len(grid)
    lines = ["".join("1" if cell else "0" for cell in row) for row in grid]
    lines += ["".join("1" if cell else "0" for cell in column) for column in zip(*grid)]
    score = 0
    for line in lines:
        for _, run in groupby(line):
            length = sum(1 for _ in run)
            if length >= 5:
                score += 3 + length - 5
        score += 40 * len(_FINDER_LIKE.findall(line))
    for upper, lower in zip(grid, grid[1:]):
        for a, b, c, d in zip(upper, upper[1:], lower, lower[1:]):
            if a == b == c == d:
                score += 3
    dark = sum(sum(row) for row in grid)
    total = size * size
    k = (abs(dark * 20 - total * 10) + total - 1) // total - 1
    return score + k * 10


def _build_matrix(version: int, codewords: list[int]) -> QrMatrix:
    size = version * 4 + 17
    modules = [[False] * size for _ in range(size)]
    reserved = [[False] * size for _ in range(size)]

    def put(x: int, y: int, dark: bool) -> None:
        modules[y][x] = dark
        reserved[y][x] = True

    for i in range(size):
        put(6, i, i % 2 == 0)
        put(i, 6, i % 2 == 0)

    for cx, cy in ((3, 3), (size - 4, 3), (3, size - 4)):
        for dy in range(-4, 5):
            for dx in range(-4, 5):
                x, y = cx + dx, cy + dy
                if 0 <= x < size and 0 <= y < size:
                    put(x, y, max(abs(dx), abs(dy)) not in (2, 4))

    positions = _alignment_positions(version)
    corners = {(positions[0], positions[0]), (positions[0], positions[-1]),
               (positions[-1], positions[0])} if positions else set()
    for ay in positions:
        for ax in positions:
            if (ax, ay) in corners:
                continue
            for dy in range(-2, 3):
                for dx in range(-2, 3):
                    put(ax + dx, ay + dy, max(abs(dx), abs(dy)) != 1)

    for x, y, _ in _format_cells(size):
        put(x, y, False)
    put(8, size - 8, True)
    for x, y, dark in _version_cells(version):
        put(x, y, dark)

    bits = ((byte >> (7 - k)) & 1 for byte in codewords for k in range(8))
    right = size - 1
    while right >= 1:
        if right == 6:
            right = 5
        upward = ((right + 1) & 2) == 0
        rows = range(size - 1, -1, -1) if upward else range(size)
        for y in rows:
            for x in (right, right - 1):
                if not reserved[y][x]:
                    modules[y][x] = bool(next(bits, 0))
        right -= 2

    def masked(mask: int) -> list[list[bool]]:
        test = _MASKS[mask]
        grid = [
            [cell != (not res and test(x, y)) for x, (cell, res) in enumerate(zip(row, rrow))]
            for y, (row, rrow) in enumerate(zip(modules, reserved))
        ]
        format_bits = _format_bits(mask)
        for x, y, index in _format_cells(size):
            grid[y][x] = bool((format_bits >> index) & 1)
        return grid

    candidates = [masked(mask) for mask in range(len(_MASKS))]
    best = min(range(len(candidates)), key=lambda mask: _penalty(candidates[mask]))
    return QrMatrix(
        version=version,
        mask=best,
        modules=tuple(tuple(row) for row in candidates[best]),
    )


def encode(data: str | bytes) -> QrMatrix:
    """Encode text or bytes as a QR symbol at error correction level M."""
    payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    version, codewords = _data_stream(payload)
    return _build_matrix(version, _interleave(codewords, version))


# --- SVG rendering -----------------------------------------------------------


def render_svg(
    matrix: QrMatrix, min_width: int, min_height: int, quiet_zone: bool = True
) -> str:
    """Render a symbol as SVG, scaling modules to reach the minimum dimensions."""
    margin = QUIET_ZONE if quiet_zone else 0
    modules_wide = matrix.size + 2 * margin
    unit_w = max(1, -(-min_width // modules_wide))
    unit_h = max(1, -(-min_height // modules_wide))
    width = modules_wide * unit_w
    height = modules_wide * unit_h

    parts = [
        '<?xml version="1.0" standalone="yes"?>',
        '<svg xmlns="http://www.w3.org/2000/svg"',
        f' version="1.1" width="{width}" height="{height}"',
        f' viewBox="0 0 {width} {height}" shape-rendering="crispEdges">',
        f'<path fill="{LIGHT_COLOR}" d="M0 0h{width}v{height}H0z"/>',
        f'<path fill="{DARK_COLOR}" d="',
    ]
    for y, row in enumerate(matrix.modules):
        for x, dark in enumerate(row):
            if dark:
                left = (x + margin) * unit_w
                top = (y + margin) * unit_h
                parts.append(f"M{left} {top}h{unit_w}v{unit_h}H{left}V{top}")
    parts.append('"/></svg>')
    return "".join(parts)


def qr_svg(data: str | bytes, min_size: int = 200) -> str:
    """Encode data and render it as a square SVG with a quiet zone."""
    return render_svg(encode(data), min_size, min_size, quiet_zone=True)