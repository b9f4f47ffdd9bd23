"""Outbound WeCom application-message delivery."""

from __future__ import annotations

import logging

from cnchannels.config.schema import HostConfig
from cnchannels.errors import ChannelError
from cnchannels.models import SendResult
from cnchannels.wecom.accounts import WecomCredentials, resolve_wecom_account
from cnchannels.wecom.api import WecomApi

logger = logging.getLogger(__name__)

WECOM_TEXT_LIMIT = 2048
MEDIA_PLACEHOLDER = "[Media not supported yet]"


class WecomSender:
    """Token fetch + message/send; never raises, errors land in SendResult."""

    def __init__(self, api: WecomApi) -> None:
        self._api = api

    async def send_text(self, credentials: WecomCredentials, user_id: str, text: str) -> SendResult:
        if not credentials.configured:
            return SendResult(ok=False, error="WeCom credentials not configured (corpId, agentId, secret)")
        if not user_id or not user_id.strip():
            return SendResult(ok=False, error="No userId provided")
        try:
            agent_id = int(credentials.agent_id)
        except ValueError:
            return SendResult(ok=False, error=f"WeCom agentId is not numeric: {credentials.agent_id}")

        try:
            access_token = await self._api.get_access_token(credentials.corp_id, credentials.secret)
            response = await self._api.send_text_message(
                access_token,
                user_id.strip(),
                agent_id,
                text[:WECOM_TEXT_LIMIT],
            )
        except ChannelError as exc:
            return SendResult(ok=False, error=str(exc))
        except Exception as exc:  # the send boundary reports, never raises
            logger.exception("Unexpected WeCom send failure")
            return SendResult(ok=False, error=str(exc))

        return SendResult(ok=True, message_id=response.get("msgid"))

    async def send_for_account(
        self,
        cfg: HostConfig,
        user_id: str,
        text: str,
        account_id: str | None = None,
    ) -> SendResult:
        account = resolve_wecom_account(cfg, account_id)
        return await self.send_text(account.credentials, user_id, text)

    async def send_media(
        self,
        cfg: HostConfig,
        user_id: str,
        text: str | None,
        media_url: str,
        account_id: str | None = None,
    ) -> SendResult:
        # TODO: upload through /media/upload and send an image message.
        logger.debug("WeCom media send not supported, sending text for %s", media_url)
        return await self.send_for_account(cfg, user_id, text or MEDIA_PLACEHOLDER, account_id)
