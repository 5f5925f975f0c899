"""
Contact directory port interface.

This module defines the read-only protocol for emergency contacts.
"""

from typing import List, Protocol
from safewatch.core.models import Contact

class ContactDirectoryPort(Protocol):
    """연락처 디렉터리 포트 인터페이스"""
    
    async def get_contacts_for_user(self, user_id: str) -> List[Contact]:
        """
        사용자의 비상 연락처를 조회합니다.
        
        Args:
            user_id: 사용자 ID
            
        Returns:
            연락처 목록
        """
        ...
