"""Minimal ABIs for the contracts the pipeline talks to."""

ERC20_ABI = [
    {"constant": True, "inputs": [], "name": "name",
     "outputs": [{"name": "", "type": "string"}], "type": "function", "stateMutability": "view"},
    {"constant": True, "inputs": [], "name": "symbol",
     "outputs": [{"name": "", "type": "string"}], "type": "function", "stateMutability": "view"},
    {"constant": True, "inputs": [], "name": "decimals",
     "outputs": [{"name": "", "type": "uint8"}], "type": "function", "stateMutability": "view"},
    {"constant": True, "inputs": [{"name": "owner", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "", "type": "uint256"}], "type": "function", "stateMutability": "view"},
]

UNISWAP_V2_FACTORY_ABI = [
    {"constant": True,
     "inputs": [{"name": "tokenA", "type": "address"}, {"name": "tokenB", "type": "address"}],
     "name": "getPair", "outputs": [{"name": "pair", "type": "address"}],
     "type": "function", "stateMutability": "view"},
]

UNISWAP_V2_PAIR_ABI = [
    {"constant": True, "inputs": [], "name": "getReserves",
     "outputs": [
         {"name": "reserve0", "type": "uint112"},
         {"name": "reserve1", "type": "uint112"},
         {"name": "blockTimestampLast", "type": "uint32"}
     ], "type": "function", "stateMutability": "view"},
    {"constant": True, "inputs": [], "name": "token0",
     "outputs": [{"name": "", "type": "address"}], "type": "function", "stateMutability": "view"},
    {"constant": True, "inputs": [], "name": "token1",
     "outputs": [{"name": "", "type": "address"}], "type": "function", "stateMutability": "view"},
]

SANDWICH_CONTRACT_ABI = [
    {"inputs": [], "name": "minProfitThreshold",
     "outputs": [{"name": "", "type": "uint256"}], "type": "function", "stateMutability": "view"},
    {"inputs": [], "name": "maxGasPrice",
     "outputs": [{"name": "", "type": "uint256"}], "type": "function", "stateMutability": "view"},
    {"inputs": [], "name": "emergencyStop",
     "outputs": [{"name": "", "type": "bool"}], "type": "function", "stateMutability": "view"},
    {"inputs": [], "name": "owner",
     "outputs": [{"name": "", "type": "address"}], "type": "function", "stateMutability": "view"},
    {"inputs": [
        {"name": "tokenA", "type": "address"},
        {"name": "tokenB", "type": "address"},
        {"name": "flashLoanAmount", "type": "uint256"},
        {"name": "frontRunAmount", "type": "uint256"},
        {"name": "victimAmount", "type": "uint256"},
        {"name": "backRunAmount", "type": "uint256"}
     ], "name": "simulateSandwich",
     "outputs": [{"name": "profitable", "type": "bool"}, {"name": "estimatedProfit", "type": "uint256"}],
     "type": "function", "stateMutability": "view"},
    {"inputs": [
        {"name": "tokenA", "type": "address"},
        {"name": "tokenB", "type": "address"},
        {"name": "flashLoanAmount", "type": "uint256"},
        {"name": "frontRunAmount", "type": "uint256"},
        {"name": "victimAmountMin", "type": "uint256"},
        {"name": "victimAmountMax", "type": "uint256"},
        {"name": "backRunAmount", "type": "uint256"},
        {"name": "deadline", "type": "uint256"}
     ], "name": "executeSandwich", "outputs": [], "type": "function", "stateMutability": "nonpayable"},
    {"inputs": [
        {"name": "tokenB", "type": "address"},
        {"name": "frontRunAmount", "type": "uint256"},
        {"name": "victimAmountMin", "type": "uint256"},
        {"name": "victimAmountMax", "type": "uint256"},
        {"name": "backRunAmount", "type": "uint256"},
        {"name": "deadline", "type": "uint256"}
     ], "name": "executeSandwichWithETH", "outputs": [], "type": "function", "stateMutability": "payable"},
    {"anonymous": False, "inputs": [
        {"indexed": True, "name": "tokenA", "type": "address"},
        {"indexed": True, "name": "tokenB", "type": "address"},
        {"indexed": False, "name": "frontRunAmount", "type": "uint256"},
        {"indexed": False, "name": "backRunAmount", "type": "uint256"},
        {"indexed": False, "name": "profit", "type": "uint256"}
     ], "name": "SandwichExecuted", "type": "event"},
]

# Canonical signatures used to build calldata and match logs
EXECUTE_SANDWICH_SIGNATURE = (
    "executeSandwich(address,address,uint256,uint256,uint256,uint256,uint256,uint256)"
)
EXECUTE_SANDWICH_WITH_ETH_SIGNATURE = (
    "executeSandwichWithETH(address,uint256,uint256,uint256,uint256,uint256)"
)
SANDWICH_EXECUTED_EVENT_SIGNATURE = "SandwichExecuted(address,address,uint256,uint256,uint256)"
