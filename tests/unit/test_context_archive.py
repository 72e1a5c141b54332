import io
import tarfile

import pytest

from dockit.BUILDERS.context_archive import ContextArchiveBuilder
from dockit.ENGINE.errors import ConfigurationError


def names(archive: bytes):
    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        return sorted(tar.getnames())


def test_build_directory(tmp_path):
    (tmp_path / 'Dockerfile').write_text('FROM scratch\nCOPY app.jar /\n')
    (tmp_path / 'app.jar').write_bytes(b'jar')
    (tmp_path / 'target').mkdir()
    (tmp_path / 'target' / 'classes.txt').write_text('x')
    (tmp_path / 'target' / 'keep.txt').write_text('x')
    (tmp_path / 'notes.log').write_text('x')
    (tmp_path / '.dockerignore').write_text('# build output\ntarget/\n!target/keep.txt\n*.log\n')

    archive = ContextArchiveBuilder().build(str(tmp_path))
    assert names(archive) == ['.dockerignore', 'Dockerfile', 'app.jar', 'target/keep.txt']


def test_build_named_dockerfile(tmp_path):
    (tmp_path / 'Dockerfile.it').write_text('FROM scratch\nEXPOSE 8080\n')
    archive = ContextArchiveBuilder(base_dir=str(tmp_path)).build('Dockerfile.it')
    assert 'Dockerfile' in names(archive)
    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        assert b'EXPOSE 8080' in tar.extractfile('Dockerfile').read()


def test_missing_dockerfile(tmp_path):
    with pytest.raises(ConfigurationError):
        ContextArchiveBuilder().build(str(tmp_path))


def test_star_stays_within_one_directory(tmp_path):
    (tmp_path / 'Dockerfile').write_text('FROM scratch\n')
    (tmp_path / 'readme.md').write_text('x')
    (tmp_path / 'docs').mkdir()
    (tmp_path / 'docs' / 'readme.md').write_text('x')
    (tmp_path / '.dockerignore').write_text('*.md\n')

    archive = ContextArchiveBuilder().build(str(tmp_path))
    assert names(archive) == ['.dockerignore', 'Dockerfile', 'docs/readme.md']


def test_double_star_matches_any_depth(tmp_path):
    (tmp_path / 'Dockerfile').write_text('FROM scratch\n')
    (tmp_path / 'readme.md').write_text('x')
    (tmp_path / 'docs' / 'api').mkdir(parents=True)
    (tmp_path / 'docs' / 'api' / 'index.md').write_text('x')
    (tmp_path / 'docs' / 'logo.png').write_bytes(b'png')
    (tmp_path / '.dockerignore').write_text('**/*.md\n')

    archive = ContextArchiveBuilder().build(str(tmp_path))
    assert names(archive) == ['.dockerignore', 'Dockerfile', 'docs/logo.png']


def test_ignored_directory_is_not_walked(tmp_path, monkeypatch):
    (tmp_path / 'Dockerfile').write_text('FROM scratch\n')
    (tmp_path / 'app.js').write_text('x')
    (tmp_path / 'node_modules' / 'left-pad').mkdir(parents=True)
    (tmp_path / 'node_modules' / 'left-pad' / 'index.js').write_text('x')
    (tmp_path / '.dockerignore').write_text('node_modules\n')

    checked = []
    original = ContextArchiveBuilder._is_ignored

    def spy(arcname, patterns):
        checked.append(arcname)
        return original(arcname, patterns)

    monkeypatch.setattr(ContextArchiveBuilder, '_is_ignored', staticmethod(spy))
    archive = ContextArchiveBuilder().build(str(tmp_path))

    assert names(archive) == ['.dockerignore', 'Dockerfile', 'app.js']
    assert 'node_modules' in checked
    assert not any(name.startswith('node_modules/') for name in checked)
