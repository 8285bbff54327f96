# shared/errors.py


class SchedulerError(Exception):
    """Базовое исключение планировщика."""


class ValidationError(SchedulerError):
    """Запись нельзя сохранить или запланировать в таком виде."""


class DeliveryError(SchedulerError):
    """Платформа отклонила отправку или обновление сообщения."""


class InvalidOption(SchedulerError):
    """Голос за неизвестный опрос или вариант вне диапазона."""


class PersistenceError(SchedulerError):
    """Ошибка чтения/записи базы данных."""
