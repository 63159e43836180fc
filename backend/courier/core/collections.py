from typing import Iterator, List, Optional, Tuple

from courier.core.errors import NotFoundError
from courier.models import Collection, CollectionFolder, Request

# Helpers over the recursive Collection.items tree. All of them return new
# objects; the collection passed in is left untouched.


def iter_requests(items: List, path: Tuple[str, ...] = ()) -> Iterator[Tuple[Tuple[str, ...], Request]]:
    """Yield (folder-name path, request) pairs depth first, in item order."""
    for item in items:
        if isinstance(item, CollectionFolder):
            yield from iter_requests(item.items, path + (item.name,))
        else:
            yield path, item


def find_request(collection: Collection, request_id: str) -> Optional[Request]:
    for _, request in iter_requests(collection.items):
        if request.id == request_id:
            return request
    return None


def find_folder(items: List, folder_id: str) -> Optional[CollectionFolder]:
    for item in items:
        if isinstance(item, CollectionFolder):
            if item.id == folder_id:
                return item
            found = find_folder(item.items, folder_id)
            if found is not None:
                return found
    return None


def _replace_in(items: List, request: Request) -> Tuple[List, bool]:
    result, replaced = [], False
    for item in items:
        if isinstance(item, CollectionFolder):
            children, hit = _replace_in(item.items, request)
            if hit:
                item = item.model_copy(update={"items": children})
                replaced = True
        elif item.id == request.id:
            item, replaced = request, True
        result.append(item)
    return result, replaced


def _append_to(items: List, folder_id: str, request: Request) -> Tuple[List, bool]:
    result, added = [], False
    for item in items:
        if isinstance(item, CollectionFolder) and not added:
            if item.id == folder_id:
                item = item.model_copy(update={"items": item.items + [request]})
                added = True
            else:
                children, added = _append_to(item.items, folder_id, request)
                if added:
                    item = item.model_copy(update={"items": children})
        result.append(item)
    return result, added


def upsert_request(collection: Collection, request: Request, folder_id: Optional[str] = None) -> Collection:
    """
    Replace the saved request with the same id wherever it lives, otherwise
    append it to `folder_id` (or the collection root).
    """
    items, replaced = _replace_in(collection.items, request)
    if not replaced:
        if folder_id is None:
            items = items + [request]
        else:
            items, added = _append_to(items, folder_id, request)
            if not added:
                raise NotFoundError(f"Unknown folder: {folder_id}")
    return collection.model_copy(update={"items": items})


def remove_item(collection: Collection, item_id: str) -> Collection:
    def _without(items: List) -> List:
        kept = []
        for item in items:
            if item.id == item_id:
                continue
            if isinstance(item, CollectionFolder):
                item = item.model_copy(update={"items": _without(item.items)})
            kept.append(item)
        return kept

    return collection.model_copy(update={"items": _without(collection.items)})
