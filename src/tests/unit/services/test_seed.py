"""Tests for tenant seeding."""

import pytest

from katanaci.services.seed import SeedEntry, SeedFileError, parse_seed_file, seed_tenants


def _write(tmp_path, text: str):
    path = tmp_path / "users.txt"
    path.write_text(text)
    return path


class TestParseSeedFile:
    def test_parses_pairs(self, tmp_path) -> None:
        path = _write(tmp_path, "alice,key-a\nbob , key-b \n")
        assert parse_seed_file(path) == [
            SeedEntry("alice", "key-a"),
            SeedEntry("bob", "key-b"),
        ]

    def test_skips_blank_and_comment_lines(self, tmp_path) -> None:
        path = _write(tmp_path, "# tenants\n\nalice,key-a\n   \n")
        assert parse_seed_file(path) == [SeedEntry("alice", "key-a")]

    @pytest.mark.parametrize(
        "line",
        ["alice", "alice,key,extra", ",key", "alice,"],
    )
    def test_malformed_line(self, tmp_path, line) -> None:
        path = _write(tmp_path, f"bob,key-b\n{line}\n")
        with pytest.raises(SeedFileError, match=":2:"):
            parse_seed_file(path)

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(SeedFileError):
            parse_seed_file(tmp_path / "missing.txt")


class TestSeedTenants:
    async def test_adds_all(self, services, tmp_path) -> None:
        path = _write(tmp_path, "alice,key-a\nbob,key-b\n")

        assert await seed_tenants(services.credentials, path) == 2
        tenant = await services.credentials.resolve("key-b")
        assert tenant is not None
        assert tenant.user_name == "bob"

    async def test_is_idempotent(self, services, tmp_path) -> None:
        path = _write(tmp_path, "alice,key-a\nbob,key-b\n")
        await seed_tenants(services.credentials, path)

        assert await seed_tenants(services.credentials, path) == 0
        assert len(await services.credentials.list_all()) == 2

    async def test_malformed_file_adds_nothing(self, services, tmp_path) -> None:
        path = _write(tmp_path, "alice,key-a\nbroken\n")
        with pytest.raises(SeedFileError):
            await seed_tenants(services.credentials, path)
        assert await services.credentials.list_all() == []
