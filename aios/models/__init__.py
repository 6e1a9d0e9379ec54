from aios.models.system_setting import SystemSetting

__all__ = ["SystemSetting"]
