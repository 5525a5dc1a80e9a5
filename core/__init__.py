"""
Core Transport Support
======================
Компоненты вокруг message-exchange ядра:
- wire: бинарный фрейм для Message / Request / SpawnRequest
- logger: настройка логирования и поток log_record для SpawnRequest
- monitoring: метрики (Counter, Gauge, Histogram)
"""
