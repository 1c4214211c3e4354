"""
ImageSync
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from messages import Role, SegmentRecord, Transport


class SegmentSubmitError(Exception): pass


async def post_presence(http: aiohttp.ClientSession, base_url: str, user_id: str, role: Role, package: Transport):
    async with http.post(
            f"{base_url.rstrip('/')}/presence",
            json={"userId": user_id, "role": role.value, "package": package.value},
            timeout=aiohttp.ClientTimeout(total=5),
    ) as resp:
        resp.raise_for_status()


class SegmentUploader:
    """
    Submits one SegmentRecord per flush to the ingestion endpoint. One request at a time, nothing is queued.
    """

    def __init__(self, base_url: str, timeout: float = 10.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http: Optional[aiohttp.ClientSession] = None

    async def submit(self, record: SegmentRecord) -> str:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        try:
            async with self._http.post(
                    f"{self._base_url}/segment",
                    json=record.to_payload(),
                    timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                body = await resp.json(content_type=None)
                if resp.status != 200:
                    error = body.get("error") if isinstance(body, dict) else None
                    raise SegmentSubmitError(error or f"segment upload failed with HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise SegmentSubmitError(f"segment upload failed: {e}") from e
        logging.debug(f"Segment {body.get('segmentId')} stored")
        return body.get("segmentId")

    async def close(self):
        if self._http is not None:
            await self._http.close()
            self._http = None
