# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from vcsyncer.manager import SyncerManager

logger = logging.getLogger(__name__)

router = APIRouter()


def get_manager(request: Request) -> SyncerManager:
    return request.app.state.manager


@router.get("/healthz")
async def healthz_view() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz_view(manager: SyncerManager = Depends(get_manager)) -> Dict[str, str]:
    if not manager.ready():
        raise HTTPException(status_code=503, detail="super caches not synced or syncer not started")
    return {"status": "ready"}


@router.get("/api/v1/status")
async def status_view(manager: SyncerManager = Depends(get_manager)) -> Dict[str, Any]:
    return manager.status()
