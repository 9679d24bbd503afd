"""Unit tests for the core package.

Tests cover:
- ``parse_floor_range`` / ``validate_floor_range`` and the filter predicates.
- ``condition_key`` determinism and field coverage.
- Unit-type labels and ``Condition`` validation.
- ``Settings`` loading from the environment and ``validate_for_run``.
- Session-cookie normalisation and login detection.
- ``EventBus`` fan-out and ``CancelToken`` waits.
- Text and JSON log formatting of engine events.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable

import pytest
from pydantic import ValidationError

from roombot.core.criteria import (
    filter_area,
    filter_equal,
    filter_floor,
    filter_price,
    parse_floor_range,
    validate_floor_range,
)
from roombot.core.events import CLAIM_ATTEMPT, EngineEvent, EventBus, EventLevel
from roombot.core.exceptions import ConfigError
from roombot.core.ids import condition_key
from roombot.core.logging_config import (
    RUN_ID_CTX,
    JsonFormatter,
    RunContextFilter,
    TextFormatter,
    configure_logging,
    level_label,
)
from roombot.core.models import (
    UNIT_TYPE_LABELS,
    Condition,
    UnitType,
    unit_type_from_label,
    unit_type_label,
)
from roombot.core.run_context import CancelToken, RunContext
from roombot.core.settings import Settings, parse_manual_room_ids, validate_conditions
from roombot.transports.session import (
    is_login_url,
    looks_like_login_page,
    normalise_session_cookie,
)

# ---------------------------------------------------------------------------
# Floor ranges and filters
# ---------------------------------------------------------------------------


class TestFloorRange:
    def test_ranges_and_singles_are_expanded(self) -> None:
        assert parse_floor_range("3-4,6") == frozenset({3, 4, 6})

    def test_whitespace_is_tolerated(self) -> None:
        assert parse_floor_range(" 3 - 5 , 9 ") == frozenset({3, 4, 5, 9})

    @pytest.mark.parametrize("spec", ["", "   ", "0"])
    def test_blank_or_zero_means_no_filter(self, spec: str) -> None:
        assert parse_floor_range(spec) == frozenset()

    def test_swapped_bounds_are_dropped(self) -> None:
        assert parse_floor_range("5-3,7") == frozenset({7})

    def test_malformed_tokens_are_dropped(self) -> None:
        assert parse_floor_range("x,2,3-,4-5-6") == frozenset({2})

    @pytest.mark.parametrize("spec", ["", "3", "3-5", "3-5,7,9-11", "3 - 5, 7"])
    def test_validate_accepts_well_formed(self, spec: str) -> None:
        validate_floor_range(spec)

    @pytest.mark.parametrize("spec", ["3-", "a", "3,,4", "3-5-7", "-3"])
    def test_validate_rejects_malformed(self, spec: str) -> None:
        with pytest.raises(ConfigError):
            validate_floor_range(spec)


class TestFilters:
    def test_zero_is_wildcard_everywhere(self) -> None:
        assert filter_equal(7, 0)
        assert filter_price(99_999, 0)
        assert filter_area(1, 0)
        assert filter_floor(42, "")
        assert filter_floor(42, "0")

    def test_equal(self) -> None:
        assert filter_equal(3, 3)
        assert not filter_equal(3, 4)

    def test_price_is_inclusive_ceiling(self) -> None:
        assert filter_price(2500, 2500)
        assert not filter_price(2501, 2500)

    def test_area_is_inclusive_floor(self) -> None:
        assert filter_area(40, 40)
        assert not filter_area(39.9, 40)

    def test_floor_membership(self) -> None:
        assert filter_floor(4, "3-4,6")
        assert not filter_floor(5, "3-4,6")

    def test_unparseable_floor_spec_matches_everything(self) -> None:
        assert filter_floor(12, "x")


# ---------------------------------------------------------------------------
# Condition key
# ---------------------------------------------------------------------------


class TestConditionKey:
    def test_layout(self) -> None:
        condition = Condition(
            community_name="青浦人才公寓",
            building_no=3,
            floor_range="3-5",
            max_price=2500,
            min_area=40,
            unit_type=UnitType.TWO_ROOM,
        )
        assert condition_key(condition) == "青浦人才公寓_1_3_3-5_2500_40"

    def test_equal_fields_give_equal_keys(self) -> None:
        a = Condition(community_name="A", building_no=3)
        b = Condition(community_name="A", building_no=3)
        assert condition_key(a) == condition_key(b)

    @pytest.mark.parametrize(
        "change",
        [
            {"community_name": "B"},
            {"building_no": 4},
            {"floor_range": "2"},
            {"max_price": 100},
            {"min_area": 10},
            {"unit_type": UnitType.THREE_ROOM},
        ],
    )
    def test_every_field_changes_the_key(self, change: dict[str, object]) -> None:
        base = Condition(community_name="A", building_no=3)
        assert condition_key(base) != condition_key(base.model_copy(update=change))


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TestUnitType:
    def test_label_table_covers_every_member(self) -> None:
        assert set(UNIT_TYPE_LABELS) == set(UnitType)

    def test_labels_round_trip(self) -> None:
        for unit_type in UnitType:
            assert unit_type_from_label(unit_type_label(unit_type)) is unit_type

    def test_unknown_label(self) -> None:
        assert unit_type_from_label("四居室") is None


class TestCondition:
    def test_defaults_are_wildcards(self) -> None:
        condition = Condition(community_name="A")
        assert condition.building_no == 0
        assert condition.floor_range == ""
        assert condition.max_price == 0
        assert condition.min_area == 0
        assert condition.unit_type is UnitType.ONE_ROOM

    def test_unit_type_accepts_label_and_digit_string(self) -> None:
        assert Condition(community_name="A", unit_type="二居室").unit_type is UnitType.TWO_ROOM
        assert Condition(community_name="A", unit_type="2").unit_type is UnitType.THREE_ROOM

    def test_unknown_label_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Condition(community_name="A", unit_type="四居室")

    def test_negative_threshold_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Condition(community_name="A", max_price=-1)

    def test_blank_community_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Condition(community_name="   ")

    def test_frozen(self) -> None:
        condition = Condition(community_name="A")
        with pytest.raises(ValidationError):
            condition.building_no = 2  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettings:
    def test_loads_from_environment(
        self, clean_env: None, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SESSION_COOKIE", "abc")
        monkeypatch.setenv("APPLICANT_NAME", "张三")
        monkeypatch.setenv("TRANSPORT", "BROWSER")
        monkeypatch.setenv(
            "CONDITIONS",
            json.dumps([{"community_name": "A", "floor_range": "3-5", "unit_type": "二居室"}]),
        )
        monkeypatch.setenv("MANUAL_ROOM_IDS", "r1, r2\nr3")

        settings = Settings()

        assert settings.session_cookie == "abc"
        assert settings.transport == "browser"
        assert settings.conditions == [
            Condition(community_name="A", floor_range="3-5", unit_type=UnitType.TWO_ROOM)
        ]
        assert settings.manual_room_ids == ["r1", "r2", "r3"]

    def test_defaults(self, clean_env: None) -> None:
        settings = Settings()
        assert settings.transport == "http"
        assert settings.use_prefetched is True
        assert settings.auto_confirm is True
        assert settings.retry_max_attempts == 3
        assert settings.retry_delay_s == pytest.approx(0.2)

    def test_unknown_transport_rejected(self, clean_env: None) -> None:
        with pytest.raises(ValidationError):
            Settings(transport="carrier-pigeon")

    def test_account_without_password_rejected(self, clean_env: None) -> None:
        with pytest.raises(ValidationError):
            Settings(portal_account="user")

    def test_trailing_slash_stripped(self, clean_env: None) -> None:
        assert Settings(portal_base_url="https://example.test/").portal_base_url == (
            "https://example.test"
        )

    def test_parse_manual_room_ids(self) -> None:
        assert parse_manual_room_ids("a,,b\r\n c ") == ["a", "b", "c"]
        assert parse_manual_room_ids("  ") == []


class TestValidateForRun:
    def test_valid_configuration_has_no_warnings(
        self, make_settings: Callable[..., Settings]
    ) -> None:
        assert make_settings(start_time="2030-05-01 09:00:00").validate_for_run() == []

    def test_empty_applicant(self, make_settings: Callable[..., Settings]) -> None:
        with pytest.raises(ConfigError, match="APPLICANT_NAME"):
            make_settings(applicant_name="  ").validate_for_run()

    def test_no_conditions_and_no_room_ids(
        self, make_settings: Callable[..., Settings]
    ) -> None:
        with pytest.raises(ConfigError):
            make_settings(conditions=[]).validate_for_run()

    def test_manual_room_ids_replace_conditions(
        self, make_settings: Callable[..., Settings]
    ) -> None:
        make_settings(conditions=[]).validate_for_run(manual_room_ids=["r1"])

    def test_explicit_conditions_override_settings(
        self, make_settings: Callable[..., Settings]
    ) -> None:
        make_settings(conditions=[]).validate_for_run([Condition(community_name="A")])

    def test_http_needs_cookie(self, make_settings: Callable[..., Settings]) -> None:
        with pytest.raises(ConfigError, match="SESSION_COOKIE"):
            make_settings(session_cookie="").validate_for_run()

    def test_browser_accepts_account_instead_of_cookie(
        self, make_settings: Callable[..., Settings]
    ) -> None:
        make_settings(
            transport="browser",
            session_cookie="",
            portal_account="user",
            portal_password="secret",
        ).validate_for_run()

    def test_browser_rejects_manual_room_ids(
        self, make_settings: Callable[..., Settings]
    ) -> None:
        with pytest.raises(ConfigError, match="http transport"):
            make_settings(transport="browser").validate_for_run(manual_room_ids=["r1"])

    @pytest.mark.parametrize("value", ["", "2030/05/01 09:00", "tomorrow"])
    def test_malformed_start_time(
        self, make_settings: Callable[..., Settings], value: str
    ) -> None:
        with pytest.raises(ConfigError):
            make_settings(start_time=value).validate_for_run()

    def test_malformed_floor_range_names_the_condition(
        self, make_settings: Callable[..., Settings]
    ) -> None:
        settings = make_settings(
            conditions=[
                Condition(community_name="A"),
                Condition(community_name="B", floor_range="3-"),
            ]
        )
        with pytest.raises(ConfigError, match="Condition 2"):
            settings.validate_for_run()

    def test_validate_conditions_alone(self) -> None:
        validate_conditions([Condition(community_name="A", floor_range="3-5")])
        with pytest.raises(ConfigError, match="Condition 1"):
            validate_conditions([Condition(community_name="A", floor_range="x")])

    def test_suspicious_values_only_warn(
        self, make_settings: Callable[..., Settings]
    ) -> None:
        warnings = make_settings(
            applicant_name="张",
            transport="browser",
            click_interval_ms=10,
            start_time="2030-05-01 03:00:00",
        ).validate_for_run()
        assert len(warnings) == 3


# ---------------------------------------------------------------------------
# Session cookie
# ---------------------------------------------------------------------------


class TestSessionCookie:
    @pytest.mark.parametrize(
        "raw",
        [
            "abc",
            " SYS_USER_COOKIE_KEY=abc ",
            "SYS_USER_COOKIE_KEY=SYS_USER_COOKIE_KEY=abc",
        ],
    )
    def test_normalised_to_single_prefix(self, raw: str) -> None:
        assert normalise_session_cookie(raw) == "SYS_USER_COOKIE_KEY=abc"

    @pytest.mark.parametrize("raw", ["", "   ", "SYS_USER_COOKIE_KEY="])
    def test_empty_value_rejected(self, raw: str) -> None:
        with pytest.raises(ConfigError):
            normalise_session_cookie(raw)

    def test_login_url_detection(self) -> None:
        assert is_login_url("https://ent.qpgzf.cn/CompanyIndex?x=1")
        assert is_login_url("https://ent.qpgzf.cn/SysLoginManage")
        assert not is_login_url("https://ent.qpgzf.cn/RoomAssign/Index")

    def test_login_page_detection(self) -> None:
        assert looks_like_login_page("<title>用户登录</title>")
        assert not looks_like_login_page("<table id='common-table'></table>")


# ---------------------------------------------------------------------------
# Events, cancellation, logging
# ---------------------------------------------------------------------------


class TestEventBus:
    def test_subscribers_receive_events_in_order(self) -> None:
        bus = EventBus(log_events=False)
        first: list[EngineEvent] = []
        second: list[EngineEvent] = []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        event = bus.emit(CLAIM_ATTEMPT, "Claiming room R1", room_id="R1")

        assert first == [event]
        assert second == [event]
        assert event.data["room_id"] == "R1"
        assert event.level is EventLevel.INFO

    def test_payload_is_read_only(self) -> None:
        event = EventBus(log_events=False).emit(CLAIM_ATTEMPT, "x", room_id="R1")
        with pytest.raises(TypeError):
            event.data["room_id"] = "R2"  # type: ignore[index]

    def test_failing_subscriber_does_not_stop_others(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        bus = EventBus(log_events=False)
        seen: list[EngineEvent] = []

        def broken(_: EngineEvent) -> None:
            raise RuntimeError("display crashed")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        with caplog.at_level(logging.ERROR):
            bus.emit(CLAIM_ATTEMPT, "x")

        assert len(seen) == 1
        assert "display crashed" in caplog.text

    def test_unsubscribe(self) -> None:
        bus = EventBus(log_events=False)
        seen: list[EngineEvent] = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()
        bus.emit(CLAIM_ATTEMPT, "x")
        assert seen == []

    def test_log_subscriber_tags_event_name(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="roombot.events"):
            EventBus().emit(CLAIM_ATTEMPT, "Claiming room R1", room_id="R1")
        record = next(r for r in caplog.records if r.name == "roombot.events")
        assert record.event == CLAIM_ATTEMPT  # type: ignore[attr-defined]
        assert record.data == {"room_id": "R1"}  # type: ignore[attr-defined]


class TestCancelToken:
    @pytest.mark.asyncio
    async def test_wait_times_out(self) -> None:
        assert await CancelToken().wait(0.01) is False

    @pytest.mark.asyncio
    async def test_wait_returns_when_cancelled(self) -> None:
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")
        assert await token.wait(5) is True
        assert token.reason == "stop"

    @pytest.mark.asyncio
    async def test_first_reason_wins(self) -> None:
        token = CancelToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"
        assert await token.wait(0) is True

    def test_run_context_manual_mode(self) -> None:
        ctx = RunContext(conditions=(), applicant_name="张三", manual_room_ids=("r1",))
        assert ctx.manual_mode
        assert not RunContext(conditions=(), applicant_name="张三").manual_mode


class TestLogging:
    def _record(self, message: str = "好", **attrs: object) -> logging.LogRecord:
        record = logging.LogRecord("roombot.events", logging.INFO, __file__, 1, message, (), None)
        for name, value in attrs.items():
            setattr(record, name, value)
        token = RUN_ID_CTX.set("run42")
        try:
            RunContextFilter().filter(record)
        finally:
            RUN_ID_CTX.reset(token)
        return record

    def test_json_carries_run_id_and_event(self) -> None:
        record = self._record(
            event=CLAIM_ATTEMPT, event_level="info", data={"room_id": "R1"}
        )

        payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "好"
        assert payload["level"] == "INFO"
        assert payload["run_id"] == "run42"
        assert payload["event"] == CLAIM_ATTEMPT
        assert payload["data"] == {"room_id": "R1"}

    def test_json_plain_record_has_no_event_keys(self) -> None:
        payload = json.loads(JsonFormatter().format(self._record()))
        assert "event" not in payload
        assert "data" not in payload

    def test_text_shows_event_tag_and_success_label(self) -> None:
        record = self._record("Claimed room R1", event="CLAIM_SUCCEEDED", event_level="success")

        line = TextFormatter().format(record)

        assert "SUCCESS" in line
        assert "[run42]" in line
        assert "roombot.events <CLAIM_SUCCEEDED>: Claimed room R1" in line

    def test_log_subscriber_marks_success_events(self, caplog: pytest.LogCaptureFixture) -> None:
        bus = EventBus()
        with caplog.at_level(logging.INFO, logger="roombot.events"):
            bus.emit("CLAIM_SUCCEEDED", "Claimed room R1", EventLevel.SUCCESS, room_id="R1")

        (record,) = [r for r in caplog.records if r.name == "roombot.events"]
        assert level_label(record) == "SUCCESS"
        assert record.event == "CLAIM_SUCCEEDED"

    def test_unknown_format_rejected(self) -> None:
        with pytest.raises(ValueError):
            configure_logging("INFO", "xml", force=True)
