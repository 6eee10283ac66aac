"""
Smoke tests for the terminal demos.
"""

from realtime.demo import booking_demo, messaging_demo


async def test_booking_demo(capsys):
    await booking_demo()

    out = capsys.readouterr().out
    assert out.count("-> booked") == 2
    assert out.count("-> refused") == 1
    assert "Unread notifications for c1: 2" in out


async def test_messaging_demo(capsys):
    await messaging_demo()

    out = capsys.readouterr().out
    assert out.count("(other tab) sent") == 3
    assert "Unread for u-provider-1: 2" in out
    assert "Unread for u-provider-1 after reading: 0" in out
