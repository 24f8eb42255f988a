"""Action node scripts shipped with the builder.

The critical ones back the system nodes (error handler, platform routing,
GenAI fallback); a bot crashes on its first message without them, so they are
never fetched from the remote registry.
"""
from __future__ import annotations

from .types import ScriptDescriptor

HANDLE_BOT_ERROR = '''# -*- coding: utf-8 -*-
"""HandleBotError - global error handler for bot session crashes.

Decision Variable: error_type
What Next?: bot_error~99990|bot_timeout~99990|other~99990
"""


class HandleBotError:
    def execute(self, log, payload=None, context=None):
        try:
            log('HandleBotError triggered')
            error_info = {}
            if isinstance(context, dict):
                error_info = context.get('error') or {}
            elif context is not None:
                error_info = getattr(context, 'error', {}) or {}

            message = str(error_info.get('message', ''))
            code = str(error_info.get('code', ''))
            if 'timeout' in message.lower() or 'timeout' in code.lower():
                error_type = 'bot_timeout'
            elif message or code:
                error_type = 'bot_error'
            else:
                error_type = 'other'

            save_to = (payload or {}).get('save_error_to', 'PLATFORM_ERROR')
            return {'error_type': error_type, save_to: message[:500]}
        except Exception as err:
            log('HandleBotError failed: {}'.format(err))
            return {'error_type': 'other'}
'''

USER_PLATFORM_ROUTING = '''# -*- coding: utf-8 -*-
"""UserPlatformRouting - route on the user's device platform.

Decision Variable: success
What Next?: ios~100|android~101|mac~102|windows~102|other~102|error~103
"""


class UserPlatformRouting:
    def execute(self, log, payload=None, context=None):
        try:
            platform = context['user_data']['platform']
            if 'iOS' in platform:
                success = 'ios'
            elif 'Android' in platform:
                success = 'android'
            elif 'Mac' in platform:
                success = 'mac'
            elif 'Windows' in platform:
                success = 'windows'
            else:
                success = 'other'
            return {'success': success}
        except Exception as err:
            log('UserPlatformRouting get Exception error: {}'.format(err))
            return {'success': 'error'}
'''

GENAI_FALLBACK = '''# -*- coding: utf-8 -*-
"""GenAIFallback - ask an LLM to interpret out-of-scope input before escalating.

Decision Variable: result
What Next?: understood~1802|route_flow~1803|not_understood~1804|error~1804
"""
import json

import requests


class GenAIFallback:
    KNOWN_INTENTS = ('product', 'details', 'schedule', 'pricing', 'support')

    def execute(self, log, payload=None, context=None):
        payload = payload or {}
        question = payload.get('question', '')
        if not question:
            return {'result': 'not_understood'}
        try:
            response = requests.post(
                payload.get('endpoint', 'https://genai.internal/complete'),
                json={
                    'question': question,
                    'context': payload.get('conversation_context', ''),
                    'company': payload.get('company_name', ''),
                    'intents': list(self.KNOWN_INTENTS),
                },
                timeout=8,
            )
            response.raise_for_status()
            result = json.loads(response.text)
        except Exception as err:
            log('GenAIFallback: AI understanding error: {}'.format(err))
            return {'result': 'error'}

        if result.get('intent') in self.KNOWN_INTENTS:
            return {'result': 'route_flow', 'DETECTED_INTENT': result['intent']}
        if result.get('answer'):
            return {'result': 'understood', 'AI_RESPONSE': result['answer']}
        return {'result': 'not_understood'}
'''

VALIDATE_REGEX = '''# -*- coding: utf-8 -*-
"""ValidateRegex - validate input against a regex pattern.

Decision Variable: success
What Next?: true~next|false~invalid|error~99990
"""
import re


class ValidateRegex:
    def execute(self, log, payload=None, context=None):
        if not payload or not payload.get('regex'):
            log('ValidateRegex: No regex pattern provided')
            return {'success': 'false'}
        try:
            value = str(payload.get('input', ''))
            if re.compile(payload['regex']).match(value):
                return {'success': 'true', 'matched_value': value}
            return {'success': 'false'}
        except re.error as regex_err:
            log('ValidateRegex: Invalid regex pattern: {}'.format(regex_err))
            return {'success': 'error', 'error': str(regex_err)}
'''

# Critical scripts first.
BUNDLED_SCRIPTS: tuple[ScriptDescriptor, ...] = (
    ScriptDescriptor(
        name="HandleBotError",
        content=HANDLE_BOT_ERROR,
        is_critical=True,
        used_by_node_ids=[-500],
        description="Global error handler for bot session crashes.",
    ),
    ScriptDescriptor(
        name="UserPlatformRouting",
        content=USER_PLATFORM_ROUTING,
        is_critical=True,
        used_by_node_ids=[10],
        description="Identifies the user platform and routes accordingly.",
    ),
    ScriptDescriptor(
        name="GenAIFallback",
        content=GENAI_FALLBACK,
        is_critical=True,
        used_by_node_ids=[1800],
        description="AI-powered intent understanding before human escalation.",
    ),
    ScriptDescriptor(
        name="ValidateRegex",
        content=VALIDATE_REGEX,
        is_critical=False,
        description="Validates user input against a regex pattern.",
    ),
)


__all__ = ["BUNDLED_SCRIPTS"]
