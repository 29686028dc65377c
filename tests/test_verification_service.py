import asyncio
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock

from gatebot.database.manager import DatabaseManager
from gatebot.database.models.key import VerificationKey
from gatebot.services.verification_service import (
    VerificationService,
    is_join_event,
    is_restriction_event,
)
from tests.helpers import (
    BOT_USERNAME,
    FakeClock,
    FakePlatform,
    GROUP_ID,
    GROUP_TITLE,
    StaticGenerator,
    make_settings,
    make_user,
)

OTHER_GROUP_ID = -1009876543210


def member(status: str, can_send_messages: bool = True):
    return SimpleNamespace(status=status, can_send_messages=can_send_messages)


class TransitionTest(unittest.TestCase):
    def test_restriction_events(self):
        self.assertTrue(is_restriction_event(member("member"), member("restricted", False)))
        self.assertTrue(is_restriction_event(None, member("restricted", False)))
        self.assertTrue(is_restriction_event(member("restricted", True), member("restricted", False)))
        self.assertFalse(is_restriction_event(member("restricted", False), member("restricted", False)))
        self.assertFalse(is_restriction_event(member("restricted", False), member("member")))

    def test_join_events(self):
        self.assertTrue(is_join_event(member("left"), member("member")))
        self.assertTrue(is_join_event(None, member("member")))
        self.assertFalse(is_join_event(member("member"), member("member")))
        self.assertFalse(is_join_event(member("member"), member("administrator")))


class VerificationServiceTestCase(unittest.IsolatedAsyncioTestCase):
    settings_overrides = {}

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.settings = make_settings(**self.settings_overrides)
        self.db = DatabaseManager(":memory:")
        await self.db.init_database()
        self.platform = FakePlatform()
        self.service = VerificationService(
            platform=self.platform,
            db_manager=self.db,
            settings=self.settings,
            clock=self.clock,
            generator=StaticGenerator("AB12CD", "ZZ99YY"),
        )
        self.user = make_user(42, "Alex")
        self.key = VerificationKey(42, GROUP_ID)

    async def asyncTearDown(self):
        await self.db.close()

    async def join(self, user=None, chat_id: int = GROUP_ID):
        await self.service.handle_chat_member_update(
            user or self.user, chat_id, GROUP_TITLE, member("left"), member("member")
        )

    async def restricted_event(self, user=None):
        await self.service.handle_chat_member_update(
            user or self.user, GROUP_ID, GROUP_TITLE, member("member"), member("restricted", False)
        )


class JoinFlowTest(VerificationServiceTestCase):
    async def test_join_issues_challenge_and_restricts(self):
        await self.join()

        record = await self.db.challenges.get_by_key(self.key)
        self.assertEqual(record.code, "AB12CD")
        self.assertEqual(record.attempts, 0)
        self.assertEqual(self.platform.calls_of("restrict"), [("restrict", GROUP_ID, 42, "granular")])
        self.assertTrue(self.service.state.restricted_by_us.check(self.key))

        dms = self.platform.messages_to(42)
        self.assertEqual(len(dms), 1)
        self.assertIn("<code>AB12CD</code>", dms[0])
        self.assertIn(GROUP_TITLE, dms[0])

    async def test_duplicate_join_is_ignored(self):
        """Test that a redelivered join event does not issue a second code"""
        await self.join()
        await self.join()
        await self.service.handle_new_members([self.user], GROUP_ID, GROUP_TITLE)

        self.assertEqual(len(self.platform.messages_to(42)), 1)
        self.assertEqual((await self.db.challenges.get_by_key(self.key)).code, "AB12CD")

    async def test_own_restriction_echo_is_ignored(self):
        await self.join()
        await self.restricted_event()

        self.assertEqual(len(self.platform.messages), 1)
        self.assertEqual(self.platform.calls_of("unrestrict"), [])

    async def test_join_while_processing_is_skipped(self):
        self.service.state.processing.try_acquire(self.key)
        await self.join()
        self.assertEqual(self.platform.messages, [])
        self.assertIsNone(await self.db.challenges.get_by_key(self.key))

    async def test_restrict_failure_still_delivers_code(self):
        self.platform.restrict_failures = {"granular", "legacy"}
        await self.join()
        self.assertEqual(len(self.platform.messages_to(42)), 1)

    async def test_bots_are_skipped_in_service_message(self):
        bot_user = make_user(777, "Helper", is_bot=True)
        await self.service.handle_new_members([bot_user, self.user], GROUP_ID, GROUP_TITLE)
        self.assertIsNone(await self.db.challenges.get_by_key(VerificationKey(777, GROUP_ID)))
        self.assertIsNotNone(await self.db.challenges.get_by_key(self.key))

    async def test_verified_user_rejoining_is_unrestricted(self):
        await self.db.verifications.upsert(self.key, self.service.records.now())
        await self.join()

        self.assertIsNone(await self.db.challenges.get_by_key(self.key))
        self.assertEqual(len(self.platform.calls_of("unrestrict")), 3)
        self.assertEqual(self.platform.calls_of("restrict"), [])

    async def test_dm_failure_falls_back_to_group(self):
        """Test that the code is posted in the group when DMs are closed"""
        self.platform.dm_blocked = {42}
        await self.join()

        group_messages = [m for m in self.platform.messages if m[0] == GROUP_ID]
        self.assertEqual(len(group_messages), 1)
        _, text, keyboard = group_messages[0]
        self.assertIn("tg://user?id=42", text)
        self.assertIn("AB12CD", text)
        button = keyboard.inline_keyboard[0][0]
        self.assertEqual(button.url, f"https://t.me/{BOT_USERNAME}?start=captcha")


class RestrictedEventTest(VerificationServiceTestCase):
    async def test_recently_verified_user_is_unrestricted(self):
        self.service.state.verified_recent.mark(self.key)
        await self.restricted_event()

        self.assertEqual(len(self.platform.calls_of("unrestrict")), 3)
        self.assertIsNone(await self.db.challenges.get_by_key(self.key))
        self.assertEqual(self.platform.messages, [])

    async def test_user_verified_in_database_is_unrestricted(self):
        await self.db.verifications.upsert(self.key, self.service.records.now())
        await self.restricted_event()
        self.assertEqual(len(self.platform.calls_of("unrestrict")), 3)

    async def test_unrestricted_by_us_alone_forces_unrestrict(self):
        self.service.state.unrestricted_by_us.mark(self.key)
        await self.restricted_event()

        self.assertEqual(len(self.platform.calls_of("unrestrict")), 3)
        self.assertIsNone(await self.db.challenges.get_by_key(self.key))
        self.assertEqual(self.platform.messages, [])

    async def test_grace_alone_forces_unrestrict(self):
        self.service.state.grace.mark(self.key, value=self.clock())
        await self.restricted_event()

        self.assertEqual(len(self.platform.calls_of("unrestrict")), 3)
        self.assertIsNone(await self.db.challenges.get_by_key(self.key))
        self.assertEqual(self.platform.messages, [])

    async def test_restricted_by_admin_gets_challenge(self):
        await self.restricted_event()

        self.assertEqual((await self.db.challenges.get_by_key(self.key)).code, "AB12CD")
        self.assertEqual(self.platform.calls_of("restrict"), [])
        self.assertTrue(self.service.state.restricted_by_us.check(self.key))
        self.assertEqual(len(self.platform.messages_to(42)), 1)

    async def test_other_transitions_are_ignored(self):
        await self.service.handle_chat_member_update(
            self.user, GROUP_ID, GROUP_TITLE, member("member"), member("administrator")
        )
        self.assertEqual(self.platform.calls, [])
        self.assertEqual(self.platform.messages, [])


class AnswerTest(VerificationServiceTestCase):
    async def test_case_sensitive_answer_then_correct_code(self):
        await self.join()

        await self.service.handle_private_text(self.user, "ab12cd")
        self.assertEqual((await self.db.challenges.get_by_key(self.key)).attempts, 1)
        self.assertIn("Осталось попыток: 2", self.platform.messages_to(42)[-1])

        await self.service.handle_private_text(self.user, "AB12CD")

        self.assertIsNone(await self.db.challenges.get_by_key(self.key))
        self.assertIsNotNone(await self.db.verifications.get_by_key(self.key))
        self.assertEqual(len(self.platform.calls_of("unrestrict")), 3)
        self.assertTrue(self.service.state.is_in_grace(self.key))
        self.assertIn("Проверка пройдена", self.platform.messages_to(42)[-1])
        group_text = self.platform.messages_to(GROUP_ID)[-1]
        self.assertIn("проверка пройдена", group_text)
        self.assertIn("в течение 1 минуты", group_text)

    async def test_three_wrong_answers_kick(self):
        await self.join()
        for answer in ("WRONG1", "WRONG2", "WRONG3"):
            await self.service.handle_private_text(self.user, answer)

        self.assertEqual(self.platform.calls_of("ban"), [("ban", GROUP_ID, 42)])
        self.assertEqual(self.platform.calls_of("unban"), [("unban", GROUP_ID, 42)])
        self.assertIsNone(await self.db.challenges.get_by_key(self.key))
        self.assertFalse(self.service.state.pending_challenge.check(self.key))
        self.assertIn("Попытки исчерпаны", self.platform.messages_to(42)[-1])

    async def test_rejoin_after_kick_starts_fresh(self):
        await self.join()
        for answer in ("WRONG1", "WRONG2", "WRONG3"):
            await self.service.handle_private_text(self.user, answer)

        await self.join()
        record = await self.db.challenges.get_by_key(self.key)
        self.assertEqual(record.code, "ZZ99YY")
        self.assertEqual(record.attempts, 0)

    async def test_no_active_challenge(self):
        await self.service.handle_private_text(self.user, "AB12CD")
        self.assertIn("Нет активной проверки", self.platform.messages_to(42)[-1])
        self.assertEqual(self.platform.calls, [])

    async def test_answer_in_group(self):
        await self.join()
        await self.service.handle_group_message(self.user, GROUP_ID, "AB12CD")

        self.assertIsNotNone(await self.db.verifications.get_by_key(self.key))
        self.assertIn("Код верный", self.platform.messages_to(GROUP_ID)[0])

    async def test_wrong_answer_in_group(self):
        await self.join()
        await self.service.handle_group_message(self.user, GROUP_ID, "nope")
        self.assertEqual((await self.db.challenges.get_by_key(self.key)).attempts, 1)
        self.assertIn("Неверный код", self.platform.messages_to(GROUP_ID)[-1])

    async def test_code_for_older_group_matches(self):
        """Test that a private answer is checked against every pending group"""
        await self.join()
        self.clock.advance(5)
        await self.join(chat_id=OTHER_GROUP_ID)

        await self.service.handle_private_text(self.user, "AB12CD")

        self.assertIsNotNone(await self.db.verifications.get_by_key(self.key))
        self.assertIsNotNone(await self.db.challenges.get_by_key(VerificationKey(42, OTHER_GROUP_ID)))

    async def test_wrong_private_answer_counts_against_newest(self):
        await self.join()
        self.clock.advance(5)
        await self.join(chat_id=OTHER_GROUP_ID)

        await self.service.handle_private_text(self.user, "nope")

        self.assertEqual((await self.db.challenges.get_by_key(self.key)).attempts, 0)
        self.assertEqual((await self.db.challenges.get_by_key(VerificationKey(42, OTHER_GROUP_ID))).attempts, 1)

    async def test_answer_while_processing(self):
        await self.join()
        self.service.state.processing.try_acquire(self.key)

        await self.service.handle_private_text(self.user, "AB12CD")

        self.assertIn("уже обрабатывается", self.platform.messages_to(42)[-1])
        self.assertIsNotNone(await self.db.challenges.get_by_key(self.key))

    async def test_concurrent_correct_answers_confirm_once(self):
        """Test that two simultaneous correct answers produce one confirmation"""
        await self.join()
        await asyncio.gather(
            self.service.handle_private_text(self.user, "AB12CD"),
            self.service.handle_private_text(self.user, "AB12CD"),
        )

        confirmations = [text for text in self.platform.messages_to(GROUP_ID) if "проверка пройдена" in text]
        self.assertEqual(len(confirmations), 1)
        self.assertEqual(len(self.platform.calls_of("unrestrict")), 3)

    async def test_unrestrict_failure_is_reported(self):
        await self.join()
        self.platform.unrestrict_failures = {"granular", "legacy", "messages_only"}

        await self.service.handle_private_text(self.user, "AB12CD")

        self.assertIn("Не удалось снять ограничения", self.platform.messages_to(42)[-1])
        # Пользователь все равно не будет ограничен повторно
        self.assertTrue(self.service.state.is_cleared(self.key))


class DatabaseFailureTest(VerificationServiceTestCase):
    async def test_challenge_kept_in_memory_when_insert_fails(self):
        self.db.challenges.replace = AsyncMock(side_effect=RuntimeError("disk I/O error"))
        await self.join()

        self.assertTrue(self.service.state.pending_challenge.check(self.key))
        self.assertIn("AB12CD", self.platform.messages_to(42)[0])

        await self.service.handle_private_text(self.user, "AB12CD")
        self.assertFalse(self.service.state.pending_challenge.check(self.key))
        self.assertEqual(len(self.platform.calls_of("unrestrict")), 3)

    async def test_wrong_answers_counted_in_memory(self):
        self.db.challenges.replace = AsyncMock(side_effect=RuntimeError("disk I/O error"))
        await self.join()
        for answer in ("WRONG1", "WRONG2", "WRONG3"):
            await self.service.handle_private_text(self.user, answer)

        self.assertEqual(len(self.platform.calls_of("ban")), 1)

    async def test_rejoin_after_failed_delete_gets_new_challenge(self):
        """Test that a leftover exhausted record does not let a kicked user back in unchallenged"""
        await self.join()
        self.db.challenges.delete_by_id = AsyncMock(side_effect=RuntimeError("disk I/O error"))
        for answer in ("WRONG1", "WRONG2", "WRONG3"):
            await self.service.handle_private_text(self.user, answer)
        self.assertEqual(len(self.platform.calls_of("ban")), 1)
        self.assertEqual((await self.db.challenges.get_by_key(self.key)).attempts, 3)

        self.platform.calls.clear()
        self.platform.messages.clear()
        await self.join()

        record = await self.db.challenges.get_by_key(self.key)
        self.assertEqual(record.code, "ZZ99YY")
        self.assertEqual(record.attempts, 0)
        self.assertEqual(self.platform.calls_of("restrict"), [("restrict", GROUP_ID, 42, "granular")])
        self.assertIn("<code>ZZ99YY</code>", self.platform.messages_to(42)[0])

    async def test_exhausted_record_is_not_answerable(self):
        await self.join()
        self.db.challenges.delete_by_id = AsyncMock(side_effect=RuntimeError("disk I/O error"))
        for answer in ("WRONG1", "WRONG2", "WRONG3"):
            await self.service.handle_private_text(self.user, answer)

        await self.service.handle_private_text(self.user, "AB12CD")

        self.assertIn("Нет активной проверки", self.platform.messages_to(42)[-1])
        self.assertEqual(self.platform.calls_of("unrestrict"), [])

    async def test_unreadable_database_is_treated_as_empty(self):
        self.db.challenges.get_by_user = AsyncMock(side_effect=RuntimeError("database is locked"))
        await self.service.handle_private_text(self.user, "AB12CD")
        self.assertIn("Нет активной проверки", self.platform.messages_to(42)[-1])

    async def test_verification_kept_in_memory_when_write_fails(self):
        await self.join()
        self.db.verifications.upsert = AsyncMock(side_effect=RuntimeError("disk I/O error"))

        await self.service.handle_private_text(self.user, "AB12CD")

        self.assertTrue(self.service.state.verified_memory_fallback.check(self.key))
        self.clock.advance(2 * 24 * 60 * 60)
        self.platform.calls.clear()
        await self.restricted_event()
        self.assertEqual(len(self.platform.calls_of("unrestrict")), 3)


class GracePeriodTest(VerificationServiceTestCase):
    async def verify(self):
        await self.join()
        await self.service.handle_private_text(self.user, "AB12CD")
        self.platform.messages.clear()

    async def test_message_inside_window_makes_verification_permanent(self):
        await self.verify()
        self.clock.advance(30)

        await self.service.handle_group_message(self.user, GROUP_ID, "привет всем")

        self.assertTrue((await self.db.verifications.get_by_key(self.key)).permanent)
        self.assertTrue(self.service.state.is_permanent(self.key))
        self.assertIn("Верификация завершена", self.platform.messages_to(42)[-1])

    async def test_non_text_message_also_counts(self):
        await self.verify()
        await self.service.handle_group_message(self.user, GROUP_ID, None)
        self.assertTrue(self.service.state.is_permanent(self.key))

    async def test_message_after_window_changes_nothing(self):
        await self.verify()
        self.clock.advance(61)

        await self.service.handle_group_message(self.user, GROUP_ID, "привет всем")

        self.assertFalse((await self.db.verifications.get_by_key(self.key)).permanent)
        self.assertFalse(self.service.state.is_permanent(self.key))
        self.assertEqual(self.platform.messages, [])

    async def test_grace_restored_from_database(self):
        """Test that the window survives losing the in-memory flag"""
        await self.verify()
        self.service.state.grace.clear(self.key)
        self.clock.advance(10)

        await self.service.handle_group_message(self.user, GROUP_ID, "привет")

        self.assertTrue((await self.db.verifications.get_by_key(self.key)).permanent)

    async def test_permanent_user_restricted_again_is_unrestricted(self):
        await self.verify()
        await self.service.handle_group_message(self.user, GROUP_ID, "привет")
        self.platform.calls.clear()

        await self.restricted_event()
        self.assertEqual(len(self.platform.calls_of("unrestrict")), 3)
        self.assertIsNone(await self.db.challenges.get_by_key(self.key))


class StartAndAdminTest(VerificationServiceTestCase):
    settings_overrides = {"message_footer": "Group gate bot"}

    async def test_start_without_challenge(self):
        await self.service.handle_start(self.user)
        text = self.platform.messages_to(42)[-1]
        self.assertIn("Привет", text)
        self.assertTrue(text.endswith("Group gate bot"))

    async def test_start_lists_pending_groups(self):
        await self.join()
        await self.service.handle_start(self.user)
        self.assertIn(GROUP_TITLE, self.platform.messages_to(42)[-1])

    async def test_clear_challenge(self):
        await self.join()
        self.assertTrue(await self.service.clear_challenge(self.key))
        self.assertIsNone(await self.db.challenges.get_by_key(self.key))
        self.assertFalse(self.service.state.restricted_by_us.check(self.key))
        self.assertFalse(await self.service.clear_challenge(self.key))

    async def test_force_verify(self):
        await self.join()
        self.assertTrue(await self.service.force_verify(self.key))
        self.assertIsNone(await self.db.challenges.get_by_key(self.key))
        self.assertIsNotNone(await self.db.verifications.get_by_key(self.key))
        self.assertTrue(self.service.state.is_in_grace(self.key))

    async def test_describe(self):
        await self.join()
        details = await self.service.describe(self.key)
        self.assertEqual(details["challenge"]["code"], "AB12CD")
        self.assertIsNone(details["verification"])
        self.assertIn("restricted_by_us", details["flags"])
