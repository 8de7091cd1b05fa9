import argparse
import logging

import colorama
from colorama import Fore, Style

from config import load_config_from_env
from domain import HiddenLiquiditySignal
from infrastructure import ConsoleNotificationSink, OkxMessageRouter, iter_recorded_messages
from services import DEFAULT_INSTRUMENT, HiddenLiquidityDetector
from simulation import run_detailed_btc_simulation, steps_to_frame


def print_signal(signal: HiddenLiquiditySignal):
    if signal is None:
        print(f"{Fore.YELLOW}⚠️  No data{Style.RESET_ALL}")
        return
    b = signal.breakdown
    print(f"\n--- 📊 {signal.coin} @ {signal.last_updated} ---")
    print(f"🎯 Score:      {signal.score:.4f}")
    print(f"🧱 Iceberg:    {b.iceberg:.4f}")
    print(f"🧽 Absorption: {b.absorption:.4f}")
    print(f"👣 Footprint:  {b.footprint:.4f}")
    print(f"⛓️  On-chain:   {b.onchain:.2f} | 📈 OI: {b.oi:.2f}")
    for reason in signal.iceberg_reasons:
        print(f"   💰 {reason.price:,.2f} refills={reason.refill_count} "
              f"vol={reason.trade_volume:.4f} score={reason.score:.3f}")


def main():
    parser = argparse.ArgumentParser(description="Hidden liquidity / iceberg detector")
    parser.add_argument("mode", choices=["sample", "detailed", "replay"])
    parser.add_argument("file", nargs="?", help="JSON lines with OKX push messages (replay)")
    parser.add_argument("--inst", default=DEFAULT_INSTRUMENT)
    parser.add_argument("--env-file", default=None)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    colorama.init()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = load_config_from_env(dotenv_path=args.env_file)
    detector = HiddenLiquidityDetector(config=config, sink=ConsoleNotificationSink())

    if args.mode == "sample":
        print(f"🔥 Sample simulation for {args.inst}...")
        print_signal(detector.run_sample_simulation(args.inst))

    elif args.mode == "detailed":
        print(f"🔥 Detailed BTC simulation for {args.inst}...")
        result = run_detailed_btc_simulation(detector, args.inst)
        print(steps_to_frame(result.steps).to_string(index=False))
        print_signal(result.final)

    else:
        if not args.file:
            parser.error("replay requires a file")
        router = OkxMessageRouter(detector, [args.inst])
        fed = 0
        for message in iter_recorded_messages(args.file):
            fed += router.handle_message(message)
        print(f"📦 Replayed {fed} entries")
        for signal in detector.export_state().values():
            print_signal(signal)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n🛑 Остановка.")
