import pytest

from conftest import create_address, create_intent, create_user
from services.commands import (
    CommandDispatcher,
    CreateIntent,
    EstimateBill,
    PauseIntent,
    StartCheckout,
    UpdateIntent,
    parse_command,
)
from services.errors import ValidationError


class TestParse:
    def test_create_intent(self):
        cmd = parse_command(
            {
                "type": "create_intent",
                "payload": {"title": "Soap", "targetUrl": "https://www.amazon.com/dp/X", "cadenceDays": "14"},
            }
        )
        assert cmd == CreateIntent(title="Soap", target_url="https://www.amazon.com/dp/X", cadence_days=14)

    def test_update_keeps_only_known_fields(self):
        cmd = parse_command({"type": "update_intent", "payload": {"intentId": 3, "title": "New", "userId": 9}})
        assert cmd == UpdateIntent(intent_id=3, changes={"title": "New"})

    def test_start_checkout_defaults(self):
        cmd = parse_command({"type": "start_checkout", "payload": {"intentId": "5"}})
        assert cmd == StartCheckout(intent_id=5)

    def test_payloadless_commands(self):
        assert parse_command({"type": "estimate_bill"}) == EstimateBill()
        assert parse_command({"type": "pause_intent", "payload": {"intentId": 1}}) == PauseIntent(intent_id=1)

    @pytest.mark.parametrize(
        "body,code",
        [
            (None, "invalid_command"),
            ({"type": "launch_rocket"}, "unknown_command"),
            ({"type": ""}, "unknown_command"),
            ({"type": "pause_intent", "payload": {}}, "invalid_command"),
            ({"type": "pause_intent", "payload": {"intentId": -1}}, "invalid_command"),
            ({"type": "create_intent", "payload": {"title": "x", "targetUrl": "https://a.b"}}, "invalid_command"),
            ({"type": "update_intent", "payload": {"intentId": 1}}, "invalid_command"),
            ({"type": "list_intents", "payload": "all"}, "invalid_command"),
        ],
    )
    def test_rejects_bad_commands(self, body, code):
        with pytest.raises(ValidationError) as excinfo:
            parse_command(body)
        assert excinfo.value.code == code


class TestDispatch:
    def test_create_then_list(self, ctx, services):
        user = create_user()
        dispatcher = CommandDispatcher(services)

        created = dispatcher.dispatch(
            user,
            CreateIntent(title="Soap", target_url="https://www.amazon.com/dp/X", cadence_days=30),
        )
        listed = dispatcher.dispatch(user, parse_command({"type": "list_intents"}))

        assert created["intent"]["title"] == "Soap"
        assert [i["id"] for i in listed["intents"]] == [created["intent"]["id"]]

    def test_start_checkout_returns_purchase_payload(self, ctx, services):
        user = create_user()
        create_address(user)
        intent = create_intent(user)

        result = CommandDispatcher(services).dispatch(user, StartCheckout(intent_id=intent.id))

        assert result["checkout"]["success"] is True
        assert result["billing"] == "deferred"

    def test_extract_intent(self, ctx, services):
        result = CommandDispatcher(services).dispatch(create_user(), parse_command(
            {"type": "extract_intent", "payload": {"message": "soap every month"}}
        ))
        assert result["intent"]["title"] == "Dish soap"
        assert result["missingFields"] == []

    def test_unhandled_type_is_a_programming_error(self, ctx, services):
        with pytest.raises(TypeError):
            CommandDispatcher(services).dispatch(create_user(), object())
