"""Tests for gate.py: allowlist, device suffixes, self-chat, echo suppression."""

from gate import AllowlistGate, normalize_sender

OWN = ("Error processing your message. Please try again.",
       "Could not understand the voice note.")


class TestNormalizeSender:
    def test_device_suffix_stripped(self):
        assert normalize_sender("15551234567:12@s.whatsapp.net") == "15551234567@s.whatsapp.net"

    def test_plain_jid_unchanged(self):
        assert normalize_sender("15551234567@s.whatsapp.net") == "15551234567@s.whatsapp.net"

    def test_group_jid_unchanged(self):
        assert normalize_sender("120363-1234@g.us") == "120363-1234@g.us"


class TestAllowlist:
    def test_empty_allowlist_accepts_nobody(self, text_event):
        gate = AllowlistGate([], self_chat=True)
        assert not gate.accepts(text_event("hi"))

    def test_allowed_number_accepted(self, text_event):
        gate = AllowlistGate(["+1 555 123 4567"])
        assert gate.accepts(text_event("hi"))

    def test_unknown_number_rejected(self, text_event):
        gate = AllowlistGate(["15551234567"])
        assert not gate.accepts(text_event("hi", chat_id="19998887777@s.whatsapp.net"))

    def test_device_qualified_sender_accepted(self, text_event):
        gate = AllowlistGate(["15551234567"])
        assert gate.accepts(text_event("hi", chat_id="15551234567:3@s.whatsapp.net"))

    def test_allowed_set_is_normalized(self):
        gate = AllowlistGate(["15551234567", "447700900123@s.whatsapp.net"])
        assert gate.allowed == frozenset({"15551234567@s.whatsapp.net",
                                          "447700900123@s.whatsapp.net"})

    def test_from_self_requires_self_chat(self, text_event):
        event = text_event("note to self", from_self=True)
        assert not AllowlistGate(["15551234567"], self_chat=False).accepts(event)
        assert AllowlistGate(["15551234567"], self_chat=True).accepts(event)


class TestEcho:
    def test_own_error_message_from_self_is_echo(self, text_event):
        gate = AllowlistGate(["15551234567"], self_chat=True, own_messages=OWN)
        assert gate.is_echo(text_event(OWN[0], from_self=True), OWN[0])

    def test_same_text_from_partner_is_not_echo(self, text_event):
        gate = AllowlistGate(["15551234567"], self_chat=True, own_messages=OWN)
        assert not gate.is_echo(text_event(OWN[0]), OWN[0])

    def test_ordinary_self_message_not_echo(self, text_event):
        gate = AllowlistGate(["15551234567"], self_chat=True, own_messages=OWN)
        assert not gate.is_echo(text_event("remind me", from_self=True), "remind me")
