import pytest

from library_app.cache_manager import cache_manager
from library_app.catalog import BookCatalog
from library_app.config import settings


@pytest.fixture
def catalog(fake_client):
    return BookCatalog(fake_client)


@pytest.fixture
def shelf(backend):
    backend.add_book("Dune", author="Frank Herbert", category="Science Fiction")
    backend.add_book("Emma", author="Jane Austen", category="Classics", available=False)
    backend.add_book("Anathem", author="Neal Stephenson", category="Science Fiction")
    return backend


def test_list_books_ordered_by_title(catalog, shelf):
    titles = [b.title for b in catalog.list_books()]
    assert titles == ["Anathem", "Dune", "Emma"]


def test_list_books_search_matches_title_or_author(catalog, shelf):
    assert [b.title for b in catalog.list_books(search="austen")] == ["Emma"]
    assert [b.title for b in catalog.list_books(search="UN")] == ["Dune"]


def test_list_books_filters(catalog, shelf):
    scifi = catalog.list_books(category="Science Fiction")
    assert {b.title for b in scifi} == {"Anathem", "Dune"}

    unavailable = catalog.list_books(available=False)
    assert [b.title for b in unavailable] == ["Emma"]


def test_list_books_empty(catalog):
    assert catalog.list_books() == []


def test_get_book_not_found(catalog):
    with pytest.raises(LookupError):
        catalog.get_book("missing")


def test_get_categories_distinct_and_sorted(catalog, shelf):
    assert catalog.get_categories() == ["Classics", "Science Fiction"]


def test_create_book_invalidates_cached_lists(catalog, shelf):
    assert len(catalog.list_books()) == 3
    catalog.create_book("Beloved", "Toni Morrison", "1400033411", "Classics")
    assert [b.title for b in catalog.list_books()] == ["Anathem", "Beloved", "Dune", "Emma"]


def test_update_book_stamps_updated_at(catalog, backend):
    row = backend.add_book("Old Title", updated_at="2020-01-01T00:00:00+00:00")
    book = catalog.update_book(row["id"], title="  New Title ")
    assert book.title == "New Title"
    assert book.updated_at != "2020-01-01T00:00:00+00:00"
    assert catalog.get_book(row["id"]).title == "New Title"


def test_update_book_rejects_unknown_fields(catalog, backend):
    row = backend.add_book("Dune")
    with pytest.raises(ValueError):
        catalog.update_book(row["id"], publisher="Chilton")


def test_update_missing_book(catalog):
    with pytest.raises(LookupError):
        catalog.update_book("missing", title="X")


def test_delete_book(catalog, backend):
    row = backend.add_book("Dune")
    catalog.get_book(row["id"])
    assert catalog.delete_book(row["id"]) is True
    assert backend.tables["books"] == []
    assert cache_manager.get(f"book:{row['id']}") is None
    with pytest.raises(LookupError):
        catalog.get_book(row["id"])


def test_upload_cover_image(catalog, backend):
    url = catalog.upload_cover_image("cover.PNG", b"\x89PNG data", "image/png")
    [(bucket, path)] = backend.objects.keys()
    assert bucket == settings.storage_bucket
    assert path.startswith(f"{settings.cover_folder}/") and path.endswith(".png")
    assert url.endswith(path)


@pytest.mark.parametrize("filename,content", [
    ("cover.exe", b"data"),
    ("cover.jpg", b""),
    ("cover.jpg", b"x" * (settings.max_upload_size + 1)),
])
def test_upload_cover_image_rejects(catalog, backend, filename, content):
    with pytest.raises(ValueError):
        catalog.upload_cover_image(filename, content)
    assert backend.objects == {}
