import asyncio

import pytest

from pullrelay.generator import CHARSET, generate_file


def test_generated_file_has_exact_size_and_charset(tmp_path):
    calls = []
    path = tmp_path / 'nested' / 'file.txt'

    asyncio.run(generate_file(path, size=2500, block_size=1000,
                              progress_callback=lambda done, total: calls.append((done, total))))

    data = path.read_bytes()
    assert len(data) == 2500
    assert set(data) <= set(CHARSET)
    assert calls == [(1000, 2500), (2000, 2500), (2500, 2500)]


def test_seed_makes_output_reproducible(tmp_path):
    first, second = tmp_path / 'a.txt', tmp_path / 'b.txt'
    asyncio.run(generate_file(first, size=4096, seed=7))
    asyncio.run(generate_file(second, size=4096, seed=7))

    assert first.read_bytes() == second.read_bytes()


def test_zero_size_creates_empty_file(tmp_path):
    path = tmp_path / 'empty.txt'
    asyncio.run(generate_file(path, size=0))

    assert path.read_bytes() == b''


def test_negative_size_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        asyncio.run(generate_file(tmp_path / 'x.txt', size=-1))
