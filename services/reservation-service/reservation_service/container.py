from dataclasses import dataclass

from .bookings import BookingService
from .events import Notifier
from .ledger import LedgerService
from .processor import PaymentProcessor
from .spaces import SpaceService
from .timechanges import TimeChangeService


@dataclass
class Services:
    spaces: SpaceService
    bookings: BookingService
    time_changes: TimeChangeService
    ledger: LedgerService
    notifier: Notifier
    processor: PaymentProcessor


def build_services(session_factory, processor: PaymentProcessor, publisher) -> Services:
    notifier = Notifier(publisher)
    return Services(
        spaces=SpaceService(session_factory),
        bookings=BookingService(session_factory, processor, notifier),
        time_changes=TimeChangeService(session_factory, processor, notifier),
        ledger=LedgerService(session_factory, processor, notifier),
        notifier=notifier,
        processor=processor,
    )
