from pathlib import Path

import pytest

from medtracker.service.fs import PathTraversalError, safe_join
from medtracker.service.images import LocalImageStore


@pytest.fixture
def image_root(tmp_path: Path) -> Path:
    return LocalImageStore(str(tmp_path), "http://testserver").root


def test_generated_image_name_resolves_inside_root(image_root: Path):
    result = safe_join(image_root, "3f2a9c.png")

    assert result.parent == image_root.resolve()


@pytest.mark.parametrize("name", ["", ".", "../state/medtracker_store.json", "/etc/passwd"])
def test_names_outside_or_equal_to_root_are_refused(image_root: Path, name: str):
    with pytest.raises(PathTraversalError):
        safe_join(image_root, name)


def test_symlink_out_of_root_is_refused(image_root: Path, tmp_path: Path):
    secret = tmp_path / ".jwt_secret"
    secret.write_text("s" * 40)
    (image_root / "leak.png").symlink_to(secret)

    with pytest.raises(PathTraversalError):
        safe_join(image_root, "leak.png")


def test_served_image_path_rejects_traversal(tmp_path: Path):
    store = LocalImageStore(str(tmp_path), "http://testserver")

    with pytest.raises(PathTraversalError):
        store.path_for("../.jwt_secret")
