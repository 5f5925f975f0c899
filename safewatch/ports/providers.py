"""
Channel provider port interface.

This module defines the protocol that push/SMS/email/call providers
implement. Delivery confirmation arrives later through the engine's
report_delivery_status callback.
"""

from typing import Protocol

class ChannelProviderPort(Protocol):
    """채널 제공자 포트 인터페이스"""
    
    channel: str
    
    async def send(self, recipient: str, content: dict) -> str:
        """
        메시지를 발송합니다.
        
        Args:
            recipient: 채널별 수신 주소 (토큰, 전화번호, 이메일)
            content: 발송 내용 (attempt_id 포함)
            
        Returns:
            제공자 측 참조 ID
            
        Raises:
            ChannelProviderError: 발송 실패
        """
        ...
