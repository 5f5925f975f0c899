"""
Update ingestion port interface.

This module defines the protocol for location/check-in ingestion.
"""

from typing import AsyncIterator, Protocol

class UpdateIngestPort(Protocol):
    """위치/체크인 수집 포트 인터페이스"""
    
    async def recv(self) -> AsyncIterator[dict]:
        """
        원시 업데이트 데이터를 비동기적으로 수신합니다.
        
        Yields:
            원시 딕셔너리 데이터
        """
        ...
