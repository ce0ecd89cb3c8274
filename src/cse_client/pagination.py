"""Lazy walking of page-numbered and cursor-paginated endpoints."""

import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Hashable, List, Mapping, Optional, Set, Tuple, Union

from .clients.rest import AuthMode, RequestGateway, Scalar
from .errors import DataIntegrityError, InvalidArgument

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
KeyFunc = Callable[[Record], Hashable]

RECORD_FIELDS = ('data', 'items', 'results', 'instruments')
CURSOR_FIELDS = ('next_cursor', 'cursor')


def default_record_key(record: Record) -> Hashable:
    """Identity of a record for boundary deduplication."""
    if isinstance(record, Mapping):
        for field in ('id', 'timestamp', 'date'):
            if field in record:
                return (record.get('symbol'), field, str(record[field]))
        if 'symbol' in record:
            return ('symbol', str(record['symbol']))
    return json.dumps(record, sort_keys=True, default=str)


def extract_page(body: Any) -> Tuple[List[Record], bool, Optional[str]]:
    """
    Split a response body into (records, cursor_mode, next_cursor).

    Cursor mode is signalled by the presence of a cursor field in a dict
    body, even when its value is null.
    """
    if isinstance(body, list):
        return body, False, None

    if isinstance(body, Mapping):
        records = None
        for field in RECORD_FIELDS:
            if isinstance(body.get(field), list):
                records = body[field]
                break
        if records is None:
            raise DataIntegrityError(f"No record list in page body with keys {sorted(body)}")

        for field in CURSOR_FIELDS:
            if field in body:
                cursor = body[field]
                return records, True, None if cursor in (None, '') else str(cursor)
        return records, False, None

    raise DataIntegrityError(f"Unexpected page body type {type(body).__name__}")


class PaginationWalker:
    """
    Turns a paginated endpoint into an async sequence of records.

    Page mode stops on a short page; cursor mode stops on a null cursor and
    raises DataIntegrityError if the provider hands back a cursor it already
    served.
    Records already yielded on the previous page are skipped so that
    providers with inclusive page boundaries do not produce duplicates.
    ``resume_token`` holds the page number or cursor of the next unread page.
    """

    def __init__(self, gateway: RequestGateway, default_limit: int = 50):
        self.gateway = gateway
        self.default_limit = default_limit
        self.resume_token: Optional[Union[int, str]] = None

    async def paginate(
        self,
        path: str,
        params: Optional[Mapping[str, Scalar]] = None,
        limit: Optional[int] = None,
        page: Optional[int] = None,
        cursor: Optional[str] = None,
        key: KeyFunc = default_record_key,
        auth: Union[AuthMode, str, None] = AuthMode.NONE
    ) -> AsyncIterator[Record]:
        if limit is None:
            limit = self.default_limit
        if limit < 1:
            raise InvalidArgument(f"limit must be positive, got {limit}")
        if page is not None and page < 1:
            raise InvalidArgument(f"page must be >= 1, got {page}")
        if page is not None and cursor is not None:
            raise InvalidArgument("Resume from either a page or a cursor, not both")

        base_params = dict(params or {})
        current_page = page or 1
        current_cursor = cursor
        seen_cursors: Set[str] = set() if cursor is None else {cursor}
        previous_keys: Set[Hashable] = set()
        pages = 0
        total = 0
        self.resume_token = current_cursor if current_cursor is not None else current_page

        while True:
            request_params = {**base_params, 'limit': limit}
            if current_cursor is not None:
                request_params['cursor'] = current_cursor
            else:
                request_params['page'] = current_page

            body = await self.gateway.send('GET', path, request_params, auth=auth)
            records, cursor_mode, next_cursor = extract_page(body)
            pages += 1

            page_keys: Set[Hashable] = set()
            for record in records:
                record_key = key(record)
                page_keys.add(record_key)
                if record_key in previous_keys:
                    logger.debug(f"Dropping boundary duplicate {record_key!r} from {path}")
                    continue
                total += 1
                yield record
            previous_keys = page_keys

            if cursor_mode:
                if next_cursor is None:
                    break
                if next_cursor in seen_cursors:
                    raise DataIntegrityError(
                        f"Cursor {next_cursor!r} from {path} was already requested",
                        details={'cursor': next_cursor, 'pages': pages}
                    )
                seen_cursors.add(next_cursor)
                current_cursor = next_cursor
            else:
                if len(records) < limit:
                    break
                current_page += 1

            self.resume_token = current_cursor if current_cursor is not None else current_page

        self.resume_token = None
        logger.info(f"Pagination of {path} complete: {total} records over {pages} pages")
