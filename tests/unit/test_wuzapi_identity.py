from zapbridge.channels.wuzapi import identity


def test_network_address_is_canonicalized() -> None:
    assert identity.normalize("5511999@s.whatsapp.net") == "5511999@c.us"


def test_linked_identifier_uses_network_alternate() -> None:
    linked = identity.normalize("987654@lid", "5511999@s.whatsapp.net")
    real = identity.normalize("5511999@s.whatsapp.net")
    assert linked == real == "5511999@c.us"


def test_linked_identifier_without_usable_alternate_keeps_its_digits() -> None:
    assert identity.normalize("987654@lid") == "987654@c.us"
    assert identity.normalize("987654@lid", "something-else") == "987654@c.us"


def test_broadcast_sources_are_filtered() -> None:
    assert identity.normalize("status@broadcast") is None
    assert identity.normalize("120363000000@broadcast", "5511999@s.whatsapp.net") is None
    assert identity.normalize("   ") is None


def test_group_addresses_pass_through() -> None:
    address = identity.normalize("120363111@g.us")
    assert address == "120363111@g.us"
    assert identity.is_group(address)
    assert not identity.is_group("5511999@c.us")


def test_address_number_strips_canonical_suffix() -> None:
    assert identity.address_number("5511999@c.us") == "5511999"
    assert identity.address_number("120363111@g.us") == "120363111@g.us"
