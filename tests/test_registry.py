from pathlib import Path

from archivist.config import ArchivistConfig, RepositoryConfig, ScheduleConfig
from archivist.registry import RepositoryRegistry


def _repository(name: str, path: Path, **routines: float) -> RepositoryConfig:
    return RepositoryConfig(
        name=name,
        path=str(path),
        routines={
            routine: ScheduleConfig(interval_seconds=interval)
            for routine, interval in routines.items()
        },
    )


def test_registry_resolves_locations_and_orders_routines(tmp_path: Path) -> None:
    (tmp_path / "photos").mkdir()
    config = ArchivistConfig(
        repositories=[_repository("photos", tmp_path / "photos" / ".." / "photos", verify=10, sync=5)]
    )

    registry = RepositoryRegistry.from_config(config)

    repository = registry.repositories["photos"]
    assert repository.location == (tmp_path / "photos").resolve()
    assert repository.routines == ("verify", "sync")
    assert registry.pairs() == [("photos", "verify"), ("photos", "sync")]
    assert registry.schedule_for(("photos", "sync")).interval_seconds == 5
    assert registry.routine_for(("photos", "verify")).name == "verify"


def test_invalid_repositories_are_excluded_without_blocking_others(tmp_path: Path) -> None:
    (tmp_path / "good").mkdir()
    (tmp_path / "file.txt").write_text("x", encoding="utf-8")
    config = ArchivistConfig(
        repositories=[
            _repository("good", tmp_path / "good", sync=60),
            _repository("missing", tmp_path / "nope", sync=60),
            _repository("not-a-dir", tmp_path / "file.txt", sync=60),
            _repository("bad-routine", tmp_path / "good", defrag=60),
            _repository("bad-interval", tmp_path / "good", sync=0),
        ]
    )

    registry = RepositoryRegistry.from_config(config)

    assert list(registry.repositories) == ["good"]
    assert set(registry.excluded) == {"missing", "not-a-dir", "bad-routine", "bad-interval"}
    assert "does not exist" in registry.excluded["missing"]
    assert "unknown routine 'defrag'" in registry.excluded["bad-routine"]
    assert registry.has_pair(("good", "sync"))
    assert not registry.has_pair(("missing", "sync"))
    assert not registry.has_pair(("good", "verify"))


def test_registry_without_repositories_still_carries_routine_table() -> None:
    registry = RepositoryRegistry.from_config(ArchivistConfig())

    assert registry.pairs() == []
    assert set(registry.routines) == {"sync", "fetch", "verify", "reclaim"}
