#!/usr/bin/env python3
"""
Точка входа в приложение.
Запуск: python main.py [signal|cycle|config] [options]
"""
import argparse
import asyncio
import json
import logging
import sys

from config.settings import get_settings
from data_handler import CsvCandleProvider
from engine.errors import SignalEngineError


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def run_signal(args) -> int:
    """Сигнал (и риск) по одному символу, вывод в JSON."""
    from engine_runner import EngineRunner

    runner = EngineRunner(CsvCandleProvider(args.data), timeframes=args.timeframes)
    aggregated = runner.generate_signals(args.symbol)
    output = {'signal': aggregated.consolidated.to_dict()}
    if args.per_timeframe:
        output['per_timeframe'] = [s.to_dict() for s in aggregated.per_timeframe]
    if args.risk and aggregated.consolidated.direction.sign != 0:
        output['risk'] = runner.assess_risk(aggregated.consolidated, seed=args.seed).to_dict()
    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


def run_cycle(args) -> int:
    """Один цикл по всем символам."""
    from engine_runner import EngineRunner

    runner = EngineRunner(CsvCandleProvider(args.data), timeframes=args.timeframes)
    result = asyncio.run(runner.run_cycle(args.symbols, with_risk=args.risk))
    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0 if result['statistics']['successful_symbols'] else 1


def build_parser(default_data: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='MTF Signal Engine')
    sub = parser.add_subparsers(dest='mode')

    signal = sub.add_parser('signal', help='Сигнал по одному символу')
    signal.add_argument('--data', default=default_data, help='Каталог с CSV свечами')
    signal.add_argument('--symbol', required=True)
    signal.add_argument('--timeframes', nargs='+')
    signal.add_argument('--risk', action='store_true', help='Добавить Monte Carlo оценку')
    signal.add_argument('--seed', type=int)
    signal.add_argument('--per-timeframe', action='store_true')

    cycle = sub.add_parser('cycle', help='Цикл по нескольким символам')
    cycle.add_argument('--data', default=default_data)
    cycle.add_argument('--symbols', nargs='+')
    cycle.add_argument('--timeframes', nargs='+')
    cycle.add_argument('--risk', action='store_true')

    config = sub.add_parser('config', help='Показать конфигурацию')
    config.add_argument('--save', metavar='PATH', help='Сохранить настройки в JSON')
    return parser


def main(argv=None) -> int:
    settings = get_settings()
    setup_logging(settings.log_level.value)

    parser = build_parser(settings.data_dir)
    args = parser.parse_args(argv)

    try:
        if args.mode == 'signal':
            return run_signal(args)
        if args.mode == 'cycle':
            return run_cycle(args)
        if args.mode == 'config':
            if args.save:
                settings.save(args.save)
            else:
                settings.print_summary()
            return 0
    except SignalEngineError as e:
        logging.getLogger(__name__).error(f"❌ {type(e).__name__}: {e}")
        return 2

    parser.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())
