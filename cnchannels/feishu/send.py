"""Outbound Feishu text delivery."""

from __future__ import annotations

import logging

from cnchannels.config.schema import HostConfig, ReceiveIdType
from cnchannels.errors import ChannelError
from cnchannels.feishu.accounts import FeishuCredentials, resolve_feishu_account
from cnchannels.feishu.api import FeishuApi
from cnchannels.models import SendResult

logger = logging.getLogger(__name__)

FEISHU_TEXT_LIMIT = 4096
MEDIA_PLACEHOLDER = "[Media not supported yet]"


class FeishuSender:
    """Token fetch + send-message; never raises, errors land in SendResult."""

    def __init__(self, api: FeishuApi) -> None:
        self._api = api

    async def send_text(
        self,
        credentials: FeishuCredentials,
        receive_id: str,
        text: str,
        receive_id_type: ReceiveIdType = ReceiveIdType.OPEN_ID,
    ) -> SendResult:
        if not credentials.configured:
            return SendResult(ok=False, error="Feishu credentials not configured (appId, appSecret)")
        if not receive_id or not receive_id.strip():
            return SendResult(ok=False, error="No receiveId provided")

        try:
            access_token = await self._api.get_tenant_access_token(
                credentials.app_id, credentials.app_secret,
            )
            response = await self._api.send_text_message(
                access_token,
                receive_id_type,
                receive_id.strip(),
                text[:FEISHU_TEXT_LIMIT],
            )
        except ChannelError as exc:
            return SendResult(ok=False, error=str(exc))
        except Exception as exc:  # the send boundary reports, never raises
            logger.exception("Unexpected Feishu send failure")
            return SendResult(ok=False, error=str(exc))

        message_id = (response.get("data") or {}).get("message_id")
        return SendResult(ok=True, message_id=message_id)

    async def send_for_account(
        self,
        cfg: HostConfig,
        receive_id: str,
        text: str,
        account_id: str | None = None,
        receive_id_type: ReceiveIdType | None = None,
    ) -> SendResult:
        account = resolve_feishu_account(cfg, account_id)
        id_type = receive_id_type or account.config.receive_id_type or ReceiveIdType.OPEN_ID
        return await self.send_text(account.credentials, receive_id, text, id_type)

    async def send_media(
        self,
        cfg: HostConfig,
        receive_id: str,
        text: str | None,
        media_url: str,
        account_id: str | None = None,
    ) -> SendResult:
        # TODO: upload media via /im/v1/images and send an image message.
        logger.debug("Feishu media send not supported, sending text for %s", media_url)
        return await self.send_for_account(cfg, receive_id, text or MEDIA_PLACEHOLDER, account_id)
