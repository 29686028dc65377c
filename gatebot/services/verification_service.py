"""Сервис верификации новых участников через капчу."""
import time
from typing import Any, Dict, List, Optional

from aiogram import html
from aiogram.types import ChatMember, InlineKeyboardButton, InlineKeyboardMarkup, User
from loguru import logger

from config.settings import Settings
from gatebot.database.manager import DatabaseManager
from gatebot.database.models.challenge import ChallengeRecord
from gatebot.database.models.key import VerificationKey
from gatebot.services.challenge import ChallengeGenerator
from gatebot.services.grace import GracePromoter
from gatebot.services.membership_state import Clock, MembershipStateStore
from gatebot.services.platform import ChatPlatform
from gatebot.services.records import VerificationRecords
from gatebot.services.restriction import RestrictionController


def is_restriction_event(old: Optional[ChatMember], new: ChatMember) -> bool:
    """Пользователь только что ограничен (или ограничение ужесточилось)."""
    if new.status != "restricted":
        return False
    if old is None or old.status != "restricted":
        return True
    return bool(getattr(old, "can_send_messages", False)) and not getattr(new, "can_send_messages", True)


def is_join_event(old: Optional[ChatMember], new: ChatMember) -> bool:
    """Пользователь стал обычным участником группы."""
    return new.status == "member" and (old is None or old.status != "member")


class VerificationService:
    """
    Машина состояний верификации для пары (пользователь, группа).

    Решает, что делать с каждым событием: ограничить, выдать капчу, снять
    ограничения или проигнорировать. События Telegram могут приходить
    повторно и параллельно, поэтому все решения опираются на флаги в памяти
    (MembershipStateStore) и записи в БД (VerificationRecords).
    """

    def __init__(
        self,
        platform: ChatPlatform,
        db_manager: DatabaseManager,
        settings: Settings,
        clock: Clock = time.time,
        generator: Optional[ChallengeGenerator] = None,
    ):
        self.platform = platform
        self.settings = settings
        self.state = MembershipStateStore(settings, clock)
        self.records = VerificationRecords(db_manager, clock)
        self.generator = generator or ChallengeGenerator(settings.captcha_length)
        self.restrictions = RestrictionController(platform, self.state, self.records, settings)
        self.grace = GracePromoter(self.state, self.records, platform)

    # События изменения статуса участника

    async def handle_chat_member_update(
        self,
        user: User,
        chat_id: int,
        chat_title: Optional[str],
        old: Optional[ChatMember],
        new: ChatMember,
    ) -> None:
        """Определяет тип перехода и передает его нужному обработчику."""
        if is_restriction_event(old, new):
            await self.handle_member_restricted(user, chat_id, chat_title)
        elif is_join_event(old, new):
            await self.handle_member_joined(user, chat_id, chat_title)
        else:
            old_status = old.status if old else "unknown"
            logger.debug(f"Пропускаем переход {old_status} -> {new.status} для {user.id} в {chat_id}")

    async def handle_member_restricted(self, user: User, chat_id: int, chat_title: Optional[str]) -> None:
        """
        Пользователь ограничен (нами, другим администратором или повторной доставкой события).

        Уже верифицированного пользователя сразу разблокируем. Если ограничение
        поставили мы сами или капча уже выдана, ничего не делаем.
        """
        key = VerificationKey(user.id, chat_id)

        reason = await self._verified_reason(key)
        if reason:
            logger.info(f"♻️ {user.id} ограничен в {chat_id}, но уже верифицирован ({reason}), снимаем ограничения")
            await self.restrictions.unrestrict(key)
            return

        if self.state.restricted_by_us.check(key):
            logger.debug(f"🔇 Ограничение {key} поставлено ботом, новая капча не нужна")
            return

        if await self._has_challenge(key):
            logger.debug(f"🧩 У {key} уже есть капча, повторно не выдаем")
            return

        with self.state.processing.hold(key) as acquired:
            if not acquired:
                logger.debug(f"⏳ {key} уже обрабатывается")
                return

            record = await self._issue_challenge(key)
            await self._deliver_challenge(user, key, chat_title, record.code)
            self.state.restricted_by_us.mark(key)

    async def handle_member_joined(self, user: User, chat_id: int, chat_title: Optional[str]) -> None:
        """
        Новый участник: выдаем капчу и ограничиваем.

        Если ограничить не удалось, капча все равно отправляется: пользователя
        мог уже ограничить другой администратор.
        """
        key = VerificationKey(user.id, chat_id)

        reason = await self._verified_reason(key)
        if reason:
            logger.info(f"✅ {user.id} вступил в {chat_id} и уже верифицирован ({reason})")
            await self.restrictions.unrestrict(key)
            return

        if await self._has_challenge(key):
            logger.debug(f"🧩 У {key} уже есть капча, повторно не выдаем")
            return

        with self.state.processing.hold(key) as acquired:
            if not acquired:
                logger.debug(f"⏳ Вступление {key} уже обрабатывается")
                return

            logger.info(f"🆕 Новый участник {user.full_name} ({user.id}) в {chat_id}")
            record = await self._issue_challenge(key)

            restricted = await self.restrictions.restrict(key)
            if not restricted:
                logger.warning(f"⚠️ Не удалось ограничить {key}, капча все равно будет отправлена")

            await self._deliver_challenge(user, key, chat_title, record.code)

    async def handle_new_members(self, users: List[User], chat_id: int, chat_title: Optional[str]) -> None:
        """Служебное сообщение о новых участниках, дублирует chat_member события."""
        for user in users:
            if user.is_bot:
                continue
            await self.handle_member_joined(user, chat_id, chat_title)

    # Сообщения

    async def handle_private_text(self, user: User, text: str) -> None:
        """Ответ на капчу в личных сообщениях: ищем капчи пользователя во всех группах."""
        challenges = await self._challenges_for_user(user.id)
        if not challenges:
            await self._send(
                user.id,
                "ℹ️ <b>Нет активной проверки</b>\n\n"
                "У вас нет ожидающих кодов. Если вы только что вступили в группу, "
                "подождите сообщение с кодом."
            )
            return

        for record in challenges:
            if record.matches(text):
                await self._complete_verification(record.key, user, reply_chat_id=user.id)
                return

        await self._register_wrong_answer(challenges[0], reply_chat_id=user.id)

    async def handle_group_message(self, user: User, chat_id: int, text: Optional[str]) -> None:
        """
        Любое сообщение в группе.

        В grace-периоде оно делает верификацию постоянной, иначе текст
        сравнивается с капчей пользователя в этой группе.
        """
        key = VerificationKey(user.id, chat_id)

        if await self.grace.on_group_message(key):
            return

        if not text:
            return

        record = await self._live_challenge(key)
        if record is None:
            return

        if record.matches(text):
            await self._complete_verification(key, user, reply_chat_id=chat_id)
        else:
            await self._register_wrong_answer(record, reply_chat_id=chat_id)

    async def handle_start(self, user: User) -> None:
        """Команда /start в личных сообщениях."""
        challenges = await self._challenges_for_user(user.id)
        if not challenges:
            await self._send(
                user.id,
                "👋 <b>Привет!</b>\n\n"
                "Я проверяю новых участников групп. Когда вы вступите в группу, "
                "я пришлю код, который нужно отправить мне сюда."
            )
            return

        titles = []
        for record in challenges:
            titles.append(f"• {html.quote(await self._chat_title(record.chat_id))}")
        await self._send(
            user.id,
            "🧩 <b>Ожидается код проверки</b>\n\n"
            "Отправьте мне код из сообщения бота для групп:\n" + "\n".join(titles)
        )

    # Администрирование

    async def clear_challenge(self, key: VerificationKey) -> bool:
        """Удаляет капчу пользователя. Возвращает True, если она была."""
        existed = await self._has_challenge(key)
        await self.records.delete_challenge(key)
        self.state.pending_challenge.clear(key)
        self.state.restricted_by_us.clear(key)
        logger.info(f"🧹 Капча {key} удалена администратором")
        return existed

    async def force_verify(self, key: VerificationKey) -> bool:
        """Снимает ограничения без капчи."""
        await self.clear_challenge(key)
        unrestricted = await self.restrictions.unrestrict(key)
        logger.info(f"🔓 Принудительная верификация {key}: {'успешно' if unrestricted else 'ошибка'}")
        return unrestricted

    async def describe(self, key: VerificationKey) -> Dict[str, Any]:
        """Состояние пользователя в памяти и в БД для отладки."""
        challenge = await self.records.get_challenge(key)
        verification = await self.records.get_verification(key)
        return {
            "flags": self.state.snapshot(key),
            "challenge": challenge.model_dump() if challenge else None,
            "verification": verification.model_dump() if verification else None,
        }

    # Внутренняя логика

    async def _verified_reason(self, key: VerificationKey) -> Optional[str]:
        """Причина, по которой пользователь считается верифицированным, или None."""
        if self.state.is_permanent(key):
            return "permanent"
        if self.state.is_in_grace(key):
            return "grace"
        if self.state.verified_recent.check(key):
            return "recent"
        if self.state.unrestricted_by_us.check(key):
            return "unrestricted_by_us"
        if self.state.verified_memory_fallback.check(key):
            return "memory"
        if await self.records.is_verified(key):
            return "database"
        return None

    async def _has_challenge(self, key: VerificationKey) -> bool:
        return await self._live_challenge(key) is not None

    def _is_exhausted(self, record: ChallengeRecord) -> bool:
        return record.attempts >= self.settings.max_captcha_attempts

    async def _live_challenge(self, key: VerificationKey) -> Optional[ChallengeRecord]:
        """
        Действующая капча из БД или из памяти.

        Запись с исчерпанными попытками остается в БД, только если ее не
        удалось удалить при исключении пользователя. Такая запись не считается
        капчей: удаляем ее повторно, и при следующем вступлении выдается новый код.
        """
        record = await self.records.get_challenge(key) or self.state.pending_challenge.get(key)
        if record is not None and self._is_exhausted(record):
            logger.warning(f"🧹 Устаревшая капча {key} с исчерпанными попытками, удаляем")
            await self._drop_challenge(record)
            return None
        return record

    async def _challenges_for_user(self, user_id: int) -> List[ChallengeRecord]:
        """Капчи из БД плюс копии в памяти для тех, что не удалось записать."""
        stored = await self.records.challenges_for_user(user_id) or []
        known = {record.key for record in stored}
        cached = [
            record
            for key, record in self.state.pending_challenge.items()
            if key.user_id == user_id and key not in known
        ]
        live = [record for record in stored + cached if not self._is_exhausted(record)]
        return sorted(live, key=lambda record: record.created_at, reverse=True)

    async def _issue_challenge(self, key: VerificationKey) -> ChallengeRecord:
        code = self.generator.generate()
        record = await self.records.create_challenge(key, code)
        if record is None:
            logger.warning(f"💾 Капча для {key} сохранена только в памяти")
            record = ChallengeRecord(
                user_id=key.user_id, chat_id=key.chat_id, code=code, created_at=self.records.now()
            )
        self.state.pending_challenge.mark(key, record)
        logger.info(f"🧩 Выдана капча для {key}")
        return record

    async def _deliver_challenge(self, user: User, key: VerificationKey, chat_title: Optional[str], code: str) -> bool:
        """Отправляет капчу в личные сообщения, при неудаче - в группу с упоминанием."""
        title = html.quote(chat_title or "группа")
        attempts = self.settings.max_captcha_attempts
        try:
            await self.platform.send_message(
                user.id,
                self._with_footer(
                    f"👋 <b>Добро пожаловать, {html.quote(user.first_name)}!</b>\n\n"
                    f"Чтобы писать в «{title}», отправьте мне этот код:\n\n"
                    f"<code>{code}</code>\n\n"
                    f"⚠️ Регистр важен. Попыток: {attempts}."
                ),
            )
            logger.debug(f"📨 Капча для {key} отправлена в личные сообщения")
            return True
        except Exception as e:
            logger.info(f"Не удалось написать {user.id} в личные сообщения: {e}, отправляем в группу")

        try:
            bot_username = await self.platform.get_bot_username()
            keyboard = InlineKeyboardMarkup(inline_keyboard=[
                [InlineKeyboardButton(text="🧩 Пройти проверку", url=f"https://t.me/{bot_username}?start=captcha")]
            ])
            await self.platform.send_message(
                key.chat_id,
                self._with_footer(
                    f"👋 Добро пожаловать, {user.mention_html()}!\n\n"
                    f"Чтобы писать в «{title}», откройте чат со мной (@{bot_username}) "
                    f"и отправьте этот код в личные сообщения:\n\n"
                    f"<code>{code}</code>"
                ),
                reply_markup=keyboard,
            )
            return True
        except Exception as e:
            logger.error(f"❌ Не удалось отправить капчу для {key}: {e}")
            return False

    async def _register_wrong_answer(self, record: ChallengeRecord, reply_chat_id: int) -> None:
        key = record.key
        attempts = await self.records.register_failed_attempt(record)
        max_attempts = self.settings.max_captcha_attempts

        if attempts >= max_attempts:
            logger.info(f"🚫 {key}: исчерпаны попытки ({attempts}/{max_attempts})")
            await self._drop_challenge(record)
            self.state.restricted_by_us.clear(key)
            await self.restrictions.kick(key)
            await self._send(
                reply_chat_id,
                "🚫 <b>Попытки исчерпаны</b>\n\n"
                "Вы удалены из группы. Вы можете вступить снова и получить новый код."
            )
            return

        self.state.pending_challenge.mark(key, record.model_copy(update={"attempts": attempts}))
        remaining = max_attempts - attempts
        logger.info(f"❌ Неверный код от {key.user_id} для {key.chat_id}, осталось попыток: {remaining}")
        await self._send(
            reply_chat_id,
            f"❌ <b>Неверный код</b>\n\nОсталось попыток: {remaining}. Регистр букв важен."
        )

    async def _drop_challenge(self, record: ChallengeRecord) -> None:
        if record.id is not None:
            await self.records.delete_challenge_by_id(record.id)
        else:
            await self.records.delete_challenge(record.key)
        self.state.pending_challenge.clear(record.key)

    async def _complete_verification(self, key: VerificationKey, user: User, reply_chat_id: int) -> bool:
        """
        Верный код: снимаем ограничения и запускаем grace-период.

        Флаги верификации ставятся до запроса к Telegram.
        """
        with self.state.processing.hold(key) as acquired:
            if not acquired:
                await self._send(reply_chat_id, "⏳ Ваша проверка уже обрабатывается, подождите немного.")
                return False

            await self._send(reply_chat_id, "✅ <b>Код верный!</b> Снимаю ограничения...")

            self.state.mark_verified(key)
            await self.records.delete_challenge(key)
            self.state.pending_challenge.clear(key)
            await self.restrictions.persist_verification(key)

            unrestricted = await self.restrictions.unrestrict(key, persist=False)
            if not unrestricted:
                await self._send(
                    reply_chat_id,
                    "❌ <b>Не удалось снять ограничения</b>\n\n"
                    "Пожалуйста, обратитесь к администратору группы."
                )
                return False

            title = html.quote(await self._chat_title(key.chat_id))
            window = self.settings.format_grace_period()
            await self._send(
                user.id,
                f"🎉 <b>Проверка пройдена!</b>\n\n"
                f"Теперь вы можете писать в «{title}». Напишите в группе любое сообщение "
                f"в течение {window}, чтобы верификация стала постоянной."
            )
            await self._send(
                key.chat_id,
                f"🎉 {user.mention_html()}, проверка пройдена! "
                f"Напишите любое сообщение в течение {window}, чтобы завершить верификацию."
            )
            logger.success(f"✅ {key.user_id} верифицирован в {key.chat_id}")
            return True

    async def _chat_title(self, chat_id: int) -> str:
        try:
            return await self.platform.get_chat_title(chat_id) or "группа"
        except Exception as e:
            logger.debug(f"Не удалось получить название чата {chat_id}: {e}")
            return "группа"

    async def _send(self, chat_id: int, text: str) -> bool:
        try:
            await self.platform.send_message(chat_id, self._with_footer(text))
            return True
        except Exception as e:
            logger.warning(f"⚠️ Не удалось отправить сообщение в {chat_id}: {e}")
            return False

    def _with_footer(self, text: str) -> str:
        if self.settings.message_footer:
            return f"{text}\n\n{self.settings.message_footer}"
        return text
